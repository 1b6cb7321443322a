"""Embedding provider client for SiteFoundry.

Talks to an OpenAI-compatible ``POST /embeddings`` endpoint over aiohttp.
Requests are batched, and transient failures (rate limiting, 5xx,
timeouts, dropped connections) are retried with exponential backoff.
"""

import asyncio
import logging
import random
from typing import List, Optional, Sequence

import aiohttp

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429})


class EmbeddingError(Exception):
    """Raised when the embedding provider cannot produce vectors."""

    def __init__(self, message: str, status: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class EmbeddingClient:
    """Batched, retrying client for a hosted embedding model."""

    def __init__(self,
                 api_key: Optional[str],
                 base_url: str = "https://api.openai.com/v1",
                 model: str = "text-embedding-3-small",
                 batch_size: int = 32,
                 max_attempts: int = 5,
                 retry_base_delay: float = 0.4,
                 max_retry_delay: float = 10.0,
                 timeout: float = 30.0,
                 session: Optional[aiohttp.ClientSession] = None):
        """
        Args:
            api_key: Bearer token for the provider
            base_url: API root; requests go to ``{base_url}/embeddings``
            model: Embedding model name
            batch_size: Maximum texts per request
            max_attempts: Total attempts per request, first try included
            retry_base_delay: Backoff base in seconds
            max_retry_delay: Upper bound for a single backoff sleep
            timeout: Per-request timeout in seconds
            session: Optional externally owned session
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.batch_size = max(1, batch_size)
        self.max_attempts = max(1, max_attempts)
        self.retry_base_delay = retry_base_delay
        self.max_retry_delay = max_retry_delay
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_settings(cls, settings) -> "EmbeddingClient":
        return cls(
            api_key=settings.embedding_api_key,
            base_url=settings.embedding_base_url,
            model=settings.embedding_model,
            batch_size=settings.embedding_batch_size,
            max_attempts=settings.embedding_max_attempts,
            retry_base_delay=settings.embedding_retry_base_delay,
            timeout=settings.embedding_timeout,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._session = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self):
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Calculate exponential backoff delay with jitter."""
        base_delay = self.retry_base_delay * (2 ** attempt)
        jitter = random.uniform(0.1, 0.3) * base_delay
        return min(base_delay + jitter, self.max_retry_delay)

    def _is_retryable_error(self, exception: Optional[Exception], status_code: Optional[int] = None) -> bool:
        """Rate limiting, server errors, timeouts and dropped connections are transient."""
        if status_code is not None:
            return status_code in RETRYABLE_STATUS_CODES or status_code >= 500

        if isinstance(exception, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
            return True

        return isinstance(exception, (aiohttp.ClientConnectionError,
                                      aiohttp.ClientConnectorError,
                                      aiohttp.ServerDisconnectedError,
                                      ConnectionResetError))

    async def _request(self, texts: Sequence[str]) -> List[List[float]]:
        """One provider call, no retries."""
        session = await self._get_session()
        payload = {"model": self.model, "input": list(texts)}

        try:
            async with session.post(f"{self.base_url}/embeddings", json=payload) as response:
                if response.status != 200:
                    body = await response.text()
                    raise EmbeddingError(
                        f"Embedding request failed with status {response.status}: {body[:200]}",
                        status=response.status,
                        retryable=self._is_retryable_error(None, response.status)
                    )
                data = await response.json()
        except asyncio.TimeoutError as e:
            raise EmbeddingError(
                f"Embedding request timed out after {self.timeout}s", retryable=True
            ) from e
        except aiohttp.ClientError as e:
            raise EmbeddingError(
                f"Embedding request failed: {e}", retryable=self._is_retryable_error(e)
            ) from e

        items = sorted(data.get("data", []), key=lambda item: item.get("index", 0))
        if len(items) != len(texts):
            raise EmbeddingError(
                f"Embedding provider returned {len(items)} vectors for {len(texts)} inputs"
            )
        return [item["embedding"] for item in items]

    async def _request_with_retry(self, texts: Sequence[str]) -> List[List[float]]:
        for attempt in range(self.max_attempts):
            try:
                return await self._request(texts)
            except EmbeddingError as e:
                if not e.retryable or attempt + 1 >= self.max_attempts:
                    if e.retryable:
                        logger.error(f"Embedding request failed after {attempt + 1} attempts: {e}")
                    raise
                delay = self._calculate_retry_delay(attempt)
                logger.warning(
                    f"Transient embedding error ({e}), retrying in {delay:.2f}s "
                    f"(attempt {attempt + 1}/{self.max_attempts})"
                )
                await asyncio.sleep(delay)
        raise EmbeddingError("Embedding request was not attempted")

    async def embed(self, text: str) -> List[float]:
        """Embed a single text."""
        vectors = await self._request_with_retry([text])
        return vectors[0] if vectors else []

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed ``texts`` in provider-sized batches, preserving order."""
        vectors: List[List[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start:start + self.batch_size]
            vectors.extend(await self._request_with_retry(batch))
        return vectors
