from typing import Any, List, Optional

from .base import CredentialProvider, EmbeddingBackend, EmbeddingClient, log
from ..errors import ServiceError


class OllamaEmbeddingClient(EmbeddingClient):
    """Local Ollama server; needs no credential."""

    backend = EmbeddingBackend.OLLAMA
    requires_credential = False

    def __init__(self, base_url: str, model: str, timeout: float = 30.0,
                 credential_provider: Optional[CredentialProvider] = None):
        # Accept either the server root or a full endpoint URL.
        if "/api/" in base_url:
            base_url = base_url.rsplit("/api/", 1)[0]
        super().__init__(base_url, model, timeout, credential_provider)

    def _embed(self, texts: List[str]) -> Any:
        log.debug("[Ollama] Embedding %d text(s) with %s", len(texts), self.model)
        url = f"{self.base_url}/api/embed"
        data = self._post(url, {"model": self.model, "input": texts})
        if not isinstance(data, dict) or "embeddings" not in data:
            raise ServiceError("embedding response has no 'embeddings' list")
        return data["embeddings"]
