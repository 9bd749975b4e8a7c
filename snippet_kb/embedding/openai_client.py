"""
OpenAI-compatible embedding client — works with OpenAI and any provider
that implements the OpenAI ``/embeddings`` API.
"""

from typing import Any, List, Optional

from .base import CredentialProvider, EmbeddingBackend, EmbeddingClient, log
from ..errors import AuthError, ServiceError


class OpenAIEmbeddingClient(EmbeddingClient):

    backend = EmbeddingBackend.OPENAI
    requires_credential = True

    def __init__(self, base_url: str, model: str, timeout: float = 30.0,
                 credential_provider: Optional[CredentialProvider] = None):
        super().__init__(base_url, model, timeout, credential_provider)

    def _headers(self, api_key: str) -> dict:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        }

    def _embed(self, texts: List[str]) -> Any:
        api_key = self._credential()
        if not api_key:
            raise AuthError("no API key stored")

        log.debug("[OpenAI] Embedding %d text(s) with %s", len(texts), self.model)
        url = f"{self.base_url}/embeddings"
        payload = {"model": self.model, "input": texts}
        data = self._post(url, payload, headers=self._headers(api_key))

        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise ServiceError("embedding response has no 'data' list")
        try:
            # The API may return items out of order; "index" is authoritative.
            ordered = sorted(items, key=lambda item: item["index"])
            return [item["embedding"] for item in ordered]
        except (KeyError, TypeError) as e:
            raise ServiceError(f"embedding response parse error: {e}") from e
