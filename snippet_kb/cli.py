"""
`snippetkb` command-line interface.

Commands
--------
snippetkb add "<text>" [--url URL] [--title TITLE]  -- store one snippet
snippetkb import FILE                               -- store snippets from a JSON-lines file
snippetkb search "<query>" [--top-k N] [--json]     -- semantic search
snippetkb delete ID [ID ...]                        -- delete snippets by id
snippetkb stats [--json]                            -- size and budget summary
snippetkb compact [--force]                         -- run eviction now
snippetkb key set [VALUE]                           -- store the API key (prompted if omitted)
snippetkb key status                                -- show whether a key is stored
snippetkb key clear                                 -- delete the key and vault material
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import sys
from dataclasses import asdict
from typing import Optional

from tqdm import tqdm

from .config import Config
from .context import KBContext
from .errors import CorruptionError, KBError
from .log_setup import setup_logger
from .progress import EventKind
from .service import Snippet

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_config(args: argparse.Namespace) -> Config:
    return Config.load(getattr(args, "config", None),
                       data_dir=getattr(args, "data_dir", None))


def _open_context(args: argparse.Namespace) -> KBContext:
    return KBContext(_load_config(args)).open()


def _read_snippets(path: str) -> list[Snippet]:
    """Read one snippet per line: a JSON object or plain text."""
    snippets: list[Snippet] = []
    with open(path, encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, 1):
            line = line.strip()
            if not line:
                continue
            if line.startswith("{"):
                try:
                    obj = json.loads(line)
                except json.JSONDecodeError as exc:
                    raise ValueError(f"{path}:{lineno}: invalid JSON: {exc}") from exc
                snippets.append(Snippet(obj.get("text", ""), obj.get("url"),
                                        obj.get("title")))
            else:
                snippets.append(Snippet(line))
    return snippets


# ---------------------------------------------------------------------------
# Sub-command handlers
# ---------------------------------------------------------------------------

def _cmd_add(args: argparse.Namespace) -> None:
    """Store a single snippet."""
    with _open_context(args) as ctx:
        record_id = ctx.service.store(args.text, url=args.url, title=args.title)
    print(f"Stored snippet #{record_id}")


def _cmd_import(args: argparse.Namespace) -> None:
    """Store every snippet in a JSON-lines file, with a progress bar."""
    snippets = _read_snippets(args.file)
    if not snippets:
        print(f"No snippets found in {args.file}")
        return

    with _open_context(args) as ctx:
        task = ctx.service.start_store_batch(snippets)
        with tqdm(total=100, unit="%", desc="Importing") as pbar:
            for event in task.events():
                target = int(event.fraction * 100)
                if target > pbar.n:
                    pbar.update(target - pbar.n)
                if event.message and event.kind is EventKind.PROGRESS:
                    pbar.set_postfix_str(event.message, refresh=False)
        ids = task.wait()
    print(f"Imported {len(ids)} snippet(s)")


def _cmd_search(args: argparse.Namespace) -> None:
    """Semantic search over the knowledge base."""
    with _open_context(args) as ctx:
        results = ctx.service.search(args.query, k=args.top_k)

    if args.json:
        print(json.dumps([asdict(r) for r in results], indent=2))
        return

    if not results:
        print(f"No results found for: {args.query!r}")
        return

    print(f"\nSearch results for: {args.query!r}  [{len(results)} result(s)]")
    print("-" * 70)
    for i, r in enumerate(results, 1):
        print(f"\n  [{i}] #{r.id}  score {r.similarity:.4f}")
        if r.title or r.url:
            print(f"       Source : {r.title or ''} {('<' + r.url + '>') if r.url else ''}".rstrip())
        preview = r.text if len(r.text) <= 200 else r.text[:200] + "..."
        print(f"       Text   : {preview}")


def _cmd_delete(args: argparse.Namespace) -> None:
    with _open_context(args) as ctx:
        deleted = ctx.service.delete(args.ids)
    print(f"Deleted {deleted} snippet(s)")


def _cmd_stats(args: argparse.Namespace) -> None:
    """Print record count, estimated size and budget."""
    with _open_context(args) as ctx:
        stats = ctx.service.stats()
        has_key = ctx.vault.has_secret()

    if args.json:
        data = asdict(stats)
        data["api_key_stored"] = has_key
        print(json.dumps(data, indent=2))
        return

    lines = [
        "",
        "Knowledge Base Stats",
        "=" * 40,
        f"  Records       : {stats.count} / {stats.max_records}",
        f"  Size (bytes)  : {stats.byte_size} / {stats.byte_threshold}",
        f"  Dimension     : {stats.dimension or 'n/a'}",
        f"  Over budget   : {'Yes' if stats.over_budget else 'No'}",
        f"  API key       : {'stored' if has_key else 'missing'}",
        "",
    ]
    print("\n".join(lines))


def _cmd_compact(args: argparse.Namespace) -> None:
    with _open_context(args) as ctx:
        removed = ctx.service.compact(force=args.force)
    print(f"Removed {removed} snippet(s)")


def _cmd_key(args: argparse.Namespace) -> None:
    """Manage the stored API key."""
    with _open_context(args) as ctx:
        vault = ctx.vault
        if args.key_cmd == "set":
            value = args.value or getpass.getpass("API key: ")
            vault.store_secret(value)
            print("API key saved.")
        elif args.key_cmd == "status":
            try:
                stored = vault.get_secret() is not None
            except CorruptionError:
                print("API key: corrupted (run `snippetkb key set` again)")
                sys.exit(1)
            print(f"Vault  : {vault.state.value}")
            print(f"API key: {'stored' if stored else 'missing'}")
        elif args.key_cmd == "clear":
            vault.clear()
            print("API key cleared.")


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    """Build and return the `snippetkb` argument parser."""
    parser = argparse.ArgumentParser(
        prog="snippetkb",
        description="Local snippet knowledge base with semantic search",
    )
    parser.add_argument("--config", help="Path to a .snippetkb.yaml file")
    parser.add_argument("--data-dir", dest="data_dir",
                        help="Directory holding the knowledge base database")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Echo log messages to stderr")
    subparsers = parser.add_subparsers(dest="cmd", metavar="COMMAND")
    subparsers.required = True

    # --- add ---
    add_p = subparsers.add_parser("add", help="Store one snippet")
    add_p.add_argument("text", help="Snippet text")
    add_p.add_argument("--url", help="Source URL")
    add_p.add_argument("--title", help="Source title")
    add_p.set_defaults(func=_cmd_add)

    # --- import ---
    import_p = subparsers.add_parser(
        "import", help="Store snippets from a JSON-lines or plain text file")
    import_p.add_argument("file", help="One snippet per line")
    import_p.set_defaults(func=_cmd_import)

    # --- search ---
    search_p = subparsers.add_parser("search", help="Semantic search")
    search_p.add_argument("query", help="Natural-language search query")
    search_p.add_argument("--top-k", dest="top_k", type=int, default=None,
                          help="Number of results (default: config top_k)")
    search_p.add_argument("--json", action="store_true", help="Output JSON")
    search_p.set_defaults(func=_cmd_search)

    # --- delete ---
    delete_p = subparsers.add_parser("delete", help="Delete snippets by id")
    delete_p.add_argument("ids", nargs="+", type=int, metavar="ID")
    delete_p.set_defaults(func=_cmd_delete)

    # --- stats ---
    stats_p = subparsers.add_parser("stats", help="Show size and budget")
    stats_p.add_argument("--json", action="store_true", help="Output JSON")
    stats_p.set_defaults(func=_cmd_stats)

    # --- compact ---
    compact_p = subparsers.add_parser("compact", help="Run eviction")
    compact_p.add_argument("--force", action="store_true",
                           help="Evict even when the store is within budget")
    compact_p.set_defaults(func=_cmd_compact)

    # --- key ---
    key_p = subparsers.add_parser("key", help="Manage the stored API key")
    key_sub = key_p.add_subparsers(dest="key_cmd", metavar="ACTION")
    key_sub.required = True
    set_p = key_sub.add_parser("set", help="Store the API key")
    set_p.add_argument("value", nargs="?", help="Key value (prompted if omitted)")
    key_sub.add_parser("status", help="Show whether a key is stored")
    key_sub.add_parser("clear", help="Delete the key and vault material")
    key_p.set_defaults(func=_cmd_key)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> None:
    """
    Main entry point for the `snippetkb` command.

    Parameters
    ----------
    argv:
        Argument list (without the program name).  Defaults to sys.argv.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        config = _load_config(args)
    except ValueError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        sys.exit(2)
    setup_logger(config.LOG_DIR, verbose=args.verbose)

    try:
        args.func(args)
    except KBError as exc:
        logger.error("[cli] %s failed: %s", args.cmd, exc)
        print(f"Error ({type(exc).__name__}): {exc}", file=sys.stderr)
        sys.exit(1)
    except (OSError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
