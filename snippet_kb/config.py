"""
Configuration — loads settings from .snippetkb.yaml, environment variables,
and built-in defaults (in that priority order: CLI args > env > YAML > defaults).
"""

import os

import yaml


_DEFAULTS = {
    "byte_threshold": 4_000_000,
    "max_records": 10_000,
    "prune_fraction": 0.25,
    "batch_size": 5,
    "top_k": 3,
    "retry_count": 3,
    "retry_base_delay": 1.0,
    "max_retry_delay": 60.0,
    "worker_count": 0,
    "embedding_backend": "openai",
    "embedding_model": "text-embedding-3-small",
    "openai_base_url": "https://api.openai.com/v1",
    "ollama_base_url": "http://localhost:11434",
    "request_timeout": 30.0,
    "data_dir": ".snippetkb",
    "storage_quota_bytes": 0,
    "log_dir": "",
    "device_id": "",
}

# Config file search locations
_CONFIG_FILENAMES = [".snippetkb.yaml", ".snippetkb.yml"]

DB_FILENAME = "knowledge.db"


def _find_config_file(explicit_path: str | None = None) -> str | None:
    """Find the config file. Checks explicit path, CWD, then user home."""
    if explicit_path:
        if os.path.isfile(explicit_path):
            return explicit_path
        return None

    search_dirs = [os.getcwd(), os.path.expanduser("~")]
    for d in search_dirs:
        for name in _CONFIG_FILENAMES:
            path = os.path.join(d, name)
            if os.path.isfile(path):
                return path
    return None


def _load_yaml(path: str) -> dict:
    """Load YAML file, returns empty dict on failure."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        return {}


class Config:
    """Knowledge base configuration.

    Settings are resolved in priority order:
    1. CLI arguments (handled by caller)
    2. Environment variables
    3. .snippetkb.yaml config file
    4. Built-in defaults
    """

    def __init__(self, yaml_data: dict | None = None, **overrides):
        yd = dict(yaml_data or {})
        explicit = {k: v for k, v in overrides.items() if v is not None}
        yd.update(explicit)

        # Helper: env var > yaml > default
        def _get(env_key: str, yaml_key: str, cast=str):
            env_val = os.getenv(env_key)
            if env_val is not None and yaml_key not in explicit:
                return cast(env_val)
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return cast(yaml_val)
            return _DEFAULTS[yaml_key]

        # Eviction budget
        self.BYTE_THRESHOLD = _get("KB_BYTE_THRESHOLD", "byte_threshold", cast=int)
        self.MAX_RECORDS = _get("KB_MAX_RECORDS", "max_records", cast=int)
        self.PRUNE_FRACTION = _get("KB_PRUNE_FRACTION", "prune_fraction", cast=float)

        # Embedding + search
        self.BATCH_SIZE = _get("KB_BATCH_SIZE", "batch_size", cast=int)
        self.TOP_K = _get("KB_TOP_K", "top_k", cast=int)
        self.WORKER_COUNT = _get("KB_WORKER_COUNT", "worker_count", cast=int)
        self.EMBEDDING_BACKEND = _get("KB_EMBEDDING_BACKEND", "embedding_backend")
        self.EMBEDDING_MODEL = _get("KB_EMBEDDING_MODEL", "embedding_model")
        self.OPENAI_BASE_URL = _get("OPENAI_BASE_URL", "openai_base_url")
        self.OLLAMA_BASE_URL = _get("OLLAMA_BASE_URL", "ollama_base_url")
        self.REQUEST_TIMEOUT = _get("KB_REQUEST_TIMEOUT", "request_timeout", cast=float)

        # Retry policy
        self.RETRY_COUNT = _get("KB_RETRY_COUNT", "retry_count", cast=int)
        self.RETRY_BASE_DELAY = _get("KB_RETRY_BASE_DELAY", "retry_base_delay",
                                     cast=float)
        self.MAX_RETRY_DELAY = _get("KB_MAX_RETRY_DELAY", "max_retry_delay",
                                    cast=float)

        # Persistence
        self.DATA_DIR = _get("KB_DATA_DIR", "data_dir")
        self.STORAGE_QUOTA_BYTES = _get("KB_STORAGE_QUOTA_BYTES",
                                        "storage_quota_bytes", cast=int)
        # Empty means "logs" under the data directory.
        self.LOG_DIR = (_get("KB_LOG_DIR", "log_dir")
                        or os.path.join(self.DATA_DIR, "logs"))
        self.DEVICE_ID = _get("KB_DEVICE_ID", "device_id")

        self._validate()

    def _validate(self) -> None:
        if not 0.0 < self.PRUNE_FRACTION < 1.0:
            raise ValueError(
                f"prune_fraction must be in (0, 1), got {self.PRUNE_FRACTION}")
        for name in ("BYTE_THRESHOLD", "MAX_RECORDS", "WORKER_COUNT",
                     "STORAGE_QUOTA_BYTES"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name.lower()} must be >= 0")
        for name in ("BATCH_SIZE", "TOP_K", "RETRY_COUNT"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name.lower()} must be >= 1")
        if self.RETRY_BASE_DELAY < 0 or self.REQUEST_TIMEOUT <= 0:
            raise ValueError("retry_base_delay and request_timeout must be positive")
        if self.MAX_RETRY_DELAY < self.RETRY_BASE_DELAY:
            raise ValueError("max_retry_delay must be >= retry_base_delay")

    @property
    def db_path(self) -> str:
        """Path of the SQLite database holding records and vault values."""
        return os.path.join(self.DATA_DIR, DB_FILENAME)

    def effective_worker_count(self) -> int:
        """Configured worker count, or the CPU count when set to 0 (auto)."""
        if self.WORKER_COUNT > 0:
            return self.WORKER_COUNT
        return max(1, os.cpu_count() or 1)

    @classmethod
    def load(cls, config_path: str | None = None, **overrides) -> "Config":
        """Load config from YAML file (if found) + env vars + defaults."""
        path = _find_config_file(config_path)
        yaml_data = _load_yaml(path) if path else {}
        return cls(yaml_data, **overrides)
