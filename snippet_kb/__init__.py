"""
snippet_kb — local snippet knowledge base with semantic search.

Public API for library usage::

    from snippet_kb import Config, KBContext

    with KBContext(Config.load()) as ctx:
        ctx.vault.store_secret(api_key)
        ctx.service.store(text, url="https://example.com", title="Example")
        for hit in ctx.service.search("what did I save about X?"):
            print(hit.similarity, hit.text)
"""

from .config import Config
from .context import KBContext
from .errors import (
    AuthError,
    CorruptionError,
    DimensionMismatchError,
    InvalidFormat,
    KBError,
    NetworkError,
    RateLimited,
    ServiceError,
    StorageFull,
    UnknownBackendError,
)
from .service import KBStats, KnowledgeService, SearchResult, Snippet

__version__ = "0.1.0"

__all__ = [
    "Config",
    "KBContext",
    "KnowledgeService",
    "SearchResult",
    "Snippet",
    "KBStats",
    "KBError",
    "AuthError",
    "RateLimited",
    "NetworkError",
    "ServiceError",
    "StorageFull",
    "InvalidFormat",
    "CorruptionError",
    "DimensionMismatchError",
    "UnknownBackendError",
]
