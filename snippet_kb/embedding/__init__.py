from .base import EmbeddingBackend, EmbeddingClient, classify_http_error
from .factory import client_from_config, create_embedding_client, parse_backend
from .ollama_client import OllamaEmbeddingClient
from .openai_client import OpenAIEmbeddingClient
