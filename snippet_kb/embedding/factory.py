"""Maps a configured backend tag onto an embedding client class."""

from __future__ import annotations

from typing import Optional, Union

from ..errors import UnknownBackendError
from .base import CredentialProvider, EmbeddingBackend, EmbeddingClient
from .ollama_client import OllamaEmbeddingClient
from .openai_client import OpenAIEmbeddingClient

_BACKENDS: dict[EmbeddingBackend, type[EmbeddingClient]] = {
    EmbeddingBackend.OPENAI: OpenAIEmbeddingClient,
    EmbeddingBackend.OLLAMA: OllamaEmbeddingClient,
}


def parse_backend(tag: Union[str, EmbeddingBackend]) -> EmbeddingBackend:
    """Return the backend kind for *tag*, or raise :class:`UnknownBackendError`."""
    if isinstance(tag, EmbeddingBackend):
        return tag
    try:
        return EmbeddingBackend(str(tag).strip().lower())
    except ValueError:
        known = ", ".join(b.value for b in EmbeddingBackend)
        raise UnknownBackendError(
            f"unknown embedding backend {tag!r} (known: {known})"
        ) from None


def create_embedding_client(
    backend: Union[str, EmbeddingBackend],
    *,
    base_url: str,
    model: str,
    timeout: float = 30.0,
    credential_provider: Optional[CredentialProvider] = None,
) -> EmbeddingClient:
    kind = parse_backend(backend)
    cls = _BACKENDS[kind]
    return cls(base_url, model, timeout=timeout,
               credential_provider=credential_provider)


def client_from_config(config, credential_provider: Optional[CredentialProvider] = None
                       ) -> EmbeddingClient:
    """Build the configured client (:class:`~snippet_kb.config.Config`)."""
    kind = parse_backend(config.EMBEDDING_BACKEND)
    base_url = (config.OPENAI_BASE_URL if kind is EmbeddingBackend.OPENAI
                else config.OLLAMA_BASE_URL)
    return create_embedding_client(
        kind,
        base_url=base_url,
        model=config.EMBEDDING_MODEL,
        timeout=config.REQUEST_TIMEOUT,
        credential_provider=credential_provider,
    )
