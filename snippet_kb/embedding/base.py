import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence

import requests

from ..errors import AuthError, KBError, NetworkError, RateLimited, ServiceError

log = logging.getLogger(__name__)

CredentialProvider = Callable[[], Optional[str]]


class EmbeddingBackend(str, Enum):
    """The closed set of embedding backend kinds."""

    OPENAI = "openai"
    OLLAMA = "ollama"


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason or "unknown error"
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str):
            return err
    return response.reason or "unknown error"


def classify_http_error(response: requests.Response) -> KBError:
    """Map a non-2xx response onto the error taxonomy."""
    status = response.status_code
    message = f"HTTP {status}: {_error_message(response)}"
    if status in (401, 403):
        return AuthError(message)
    if status == 429:
        retry_after: Optional[float] = None
        header = response.headers.get("Retry-After")
        if header:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = None
        return RateLimited(message, retry_after=retry_after)
    if status >= 500 or status == 408:
        return ServiceError(message, transient=True, status_code=status)
    return ServiceError(message, transient=False, status_code=status)


class EmbeddingClient(ABC):
    """Turns texts into fixed-length vectors through a remote service.

    Every backend honours the same contract: ``initialize``,
    ``embed_batch`` and ``cleanup``.  ``embed_batch`` never retries; the
    caller owns the retry policy.
    """

    backend: EmbeddingBackend
    requires_credential: bool = False

    def __init__(self, base_url: str, model: str, timeout: float = 30.0,
                 credential_provider: Optional[CredentialProvider] = None):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._credential_provider = credential_provider
        self._initialized = False

    # ── Lifecycle ──

    def initialize(self) -> None:
        self._initialized = True

    def cleanup(self) -> None:
        self._initialized = False

    # ── Public entry point ──

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed *texts*; ``result[i]`` is the vector for ``texts[i]``."""
        if not texts:
            return []
        if not self._initialized:
            self.initialize()
        vectors = self._embed(list(texts))
        return self._check_vectors(vectors, len(texts))

    # ── Helpers for subclasses ──

    def _credential(self) -> Optional[str]:
        if self._credential_provider is None:
            return None
        return self._credential_provider()

    def _timeout(self) -> tuple:
        return (min(10.0, self.timeout), self.timeout)

    def _post(self, url: str, payload: dict,
              headers: Optional[dict] = None) -> Any:
        """POST JSON and return the decoded body, raising typed errors."""
        try:
            response = requests.post(url, headers=headers, json=payload,
                                     timeout=self._timeout())
        except requests.exceptions.Timeout as e:
            log.warning("[%s] Request timed out: %s", self.backend.value, e)
            raise NetworkError(f"request to {url} timed out") from e
        except requests.exceptions.RequestException as e:
            log.warning("[%s] Transport error: %s", self.backend.value, e)
            raise NetworkError(str(e)) from e

        if not response.ok:
            error = classify_http_error(response)
            log.warning("[%s] Embedding request failed: %s", self.backend.value, error)
            raise error

        try:
            return response.json()
        except ValueError as e:
            raise ServiceError("embedding response is not JSON") from e

    def _check_vectors(self, vectors: Any, expected: int) -> List[List[float]]:
        if not isinstance(vectors, list) or len(vectors) != expected:
            raise ServiceError(
                f"expected {expected} embeddings, got "
                f"{len(vectors) if isinstance(vectors, list) else type(vectors).__name__}"
            )
        checked: List[List[float]] = []
        for vec in vectors:
            if not isinstance(vec, list) or not vec:
                raise ServiceError("embedding response contains an empty vector")
            try:
                checked.append([float(x) for x in vec])
            except (TypeError, ValueError) as e:
                raise ServiceError("embedding response contains non-numeric values") from e
        return checked

    # ── Subclass hooks ──

    @abstractmethod
    def _embed(self, texts: List[str]) -> Any:
        """Call the service and return the raw list of vectors in input order."""
