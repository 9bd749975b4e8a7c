import logging
import os
import sys
from datetime import datetime

_LOGGER_NAME = "snippet_kb"


def setup_logger(log_dir: str = ".snippetkb/logs",
                 verbose: bool = False) -> logging.Logger:
    """Creates a file logger for the ``snippet_kb`` package.

    Everything at DEBUG and above goes to a timestamped file under
    *log_dir*.  With *verbose*, INFO and above is echoed to stderr as well.
    Calling this twice does not add duplicate handlers.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    if not any(getattr(h, "_snippet_kb", False) for h in logger.handlers):
        os.makedirs(log_dir, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = os.path.join(log_dir, f"snippetkb_{timestamp}.log")

        # File handler: captures everything
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        ))
        fh._snippet_kb = True  # type: ignore[attr-defined]
        logger.addHandler(fh)

    if verbose and not any(getattr(h, "_snippet_kb_console", False)
                           for h in logger.handlers):
        sh = logging.StreamHandler(sys.stderr)
        sh.setLevel(logging.INFO)
        sh.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
        sh._snippet_kb_console = True  # type: ignore[attr-defined]
        logger.addHandler(sh)

    return logger
