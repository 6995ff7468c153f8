"""Embedding client for a local Ollama server.

Connection failures, timeouts and 5xx responses are retried with
exponential backoff. A missing model or an unusable response is a
configuration problem and is raised immediately.
"""

import logging
import time

import requests

from .validation import validate_embedding_text

logger = logging.getLogger(__name__)

DEFAULT_URL = "http://localhost:11434"
DEFAULT_MODEL = "nomic-embed-text"


class EmbeddingError(Exception):
    """Base class for embedding provider failures."""


class ProviderUnavailableError(EmbeddingError):
    """The provider could not be reached after all retries."""


class ProviderConfigError(EmbeddingError):
    """The provider answered but cannot produce embeddings as configured."""


class _TransientHTTPError(Exception):
    pass


class OllamaClient:
    """Generates embeddings through Ollama's /api/embed endpoint."""

    def __init__(
        self,
        base_url: str = DEFAULT_URL,
        model: str = DEFAULT_MODEL,
        timeout: float = 30,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.session = session or requests.Session()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        self.session.close()

    def generate_embedding(self, text: str) -> list[float]:
        """Embed one text.

        Raises ValidationError before any request when the text is blank
        or too long, ProviderConfigError when the model is missing or the
        response has no vector, and ProviderUnavailableError when every
        attempt failed for transient reasons.
        """
        text = validate_embedding_text(text)
        last_error = None

        for attempt in range(self.max_retries + 1):
            if attempt:
                delay = self.retry_delay * (2 ** (attempt - 1))
                logger.info("Retrying embedding request in %.1fs (attempt %d/%d)",
                            delay, attempt + 1, self.max_retries + 1)
                time.sleep(delay)
            try:
                return self._embed(text)
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = e
                logger.warning("Embedding request to %s failed: %s", self.base_url, e)
            except _TransientHTTPError as e:
                last_error = e
                logger.warning("Embedding request returned %s", e)

        raise ProviderUnavailableError(
            f"Ollama connection failed at {self.base_url} after "
            f"{self.max_retries + 1} attempts ({last_error}). Is Ollama running? "
            f"Start it with 'ollama serve' and make sure the model is present "
            f"with 'ollama pull {self.model}'. Visit https://ollama.com"
        ) from last_error

    def _embed(self, text: str) -> list[float]:
        response = self.session.post(
            f"{self.base_url}/api/embed",
            json={"model": self.model, "input": text},
            timeout=self.timeout,
        )
        status = response.status_code
        if status >= 500:
            raise _TransientHTTPError(f"HTTP {status} from {self.base_url}")
        if status >= 400:
            raise ProviderConfigError(
                f"Ollama rejected the request (HTTP {status}): {response.text[:200]}. "
                f"Is the model '{self.model}' installed? Run: ollama pull {self.model}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderConfigError(f"Ollama returned invalid JSON: {e}") from e

        embeddings = data.get("embeddings") if isinstance(data, dict) else None
        if not embeddings or not embeddings[0]:
            raise ProviderConfigError(
                f"Ollama returned no embedding. Is the model '{self.model}' "
                f"installed? Run: ollama pull {self.model}"
            )
        return [float(x) for x in embeddings[0]]

    def is_available(self) -> bool:
        """True if the server answers and lists the configured model."""
        try:
            response = self.session.get(f"{self.base_url}/api/tags", timeout=self.timeout)
            if response.status_code != 200:
                return False
            models = response.json().get("models") or []
        except (requests.RequestException, ValueError, AttributeError) as e:
            logger.debug("Ollama availability check failed: %s", e)
            return False

        wanted = self.model.lower()
        return any(wanted in str(m.get("name", "")).lower()
                   for m in models if isinstance(m, dict))

