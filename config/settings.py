"""Runtime settings for the SiteFoundry ingestion pipeline.

All values come from the environment (``SITEFOUNDRY_*``; the embedding
key also falls back to ``OPENAI_API_KEY``).
"""

import os
from typing import Optional

from pydantic import BaseModel, Field


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class IngestionSettings(BaseModel):
    """Crawl, chunking, embedding and maintenance settings."""

    # Embedding provider (OpenAI-compatible /embeddings endpoint)
    embedding_api_key: Optional[str] = Field(default=None, description="Embedding provider API key")
    embedding_base_url: str = Field(default="https://api.openai.com/v1", description="Embedding API base URL")
    embedding_model: str = Field(default="text-embedding-3-small", description="Embedding model name")
    embedding_batch_size: int = Field(default=32, ge=1, description="Texts per embedding request")
    embedding_max_attempts: int = Field(default=5, ge=1, description="Attempts per embedding request")
    embedding_retry_base_delay: float = Field(default=0.4, ge=0, description="Backoff base delay in seconds")
    embedding_timeout: float = Field(default=30.0, gt=0, description="Embedding request timeout in seconds")

    # Chunking
    chunk_size: int = Field(default=1050, description="Chunk window in characters")
    chunk_overlap: int = Field(default=150, description="Overlap between chunk windows")

    # Crawling
    crawl_concurrency: int = Field(default=4, ge=1, description="Pages processed in parallel per job")
    fetch_timeout: float = Field(default=12.0, gt=0, description="Page fetch timeout in seconds")
    max_pages_ceiling: int = Field(default=200, ge=1, description="Hard cap on pages per job")
    min_content_length: int = Field(default=200, ge=0, description="Text length below which a page is thin")
    user_agent: str = Field(default="SiteFoundryBot/1.0 (+https://sitefoundry.dev/bot)", description="Crawler user agent")

    # Fallback ladder
    text_service_enabled: bool = Field(default=False, description="Use the text-extraction service for thin pages")
    text_service_url: str = Field(default="https://r.jina.ai", description="Text-extraction service base URL")
    browser_render_enabled: bool = Field(default=False, description="Use headless rendering for thin pages")
    browser_render_timeout: float = Field(default=15.0, gt=0, description="Navigation timeout in seconds")
    browser_network_idle_grace: float = Field(default=1.5, ge=0, description="Network-idle wait after DOM load")

    # Maintenance
    stale_run_minutes: int = Field(default=15, ge=1, description="Heartbeat age that marks a run stale")
    maintenance_interval_minutes: int = Field(default=5, ge=1, description="Stale sweep interval")

    @classmethod
    def from_env(cls) -> 'IngestionSettings':
        """Create settings from environment variables."""
        return cls(
            embedding_api_key=os.getenv('SITEFOUNDRY_EMBEDDING_API_KEY') or os.getenv('OPENAI_API_KEY'),
            embedding_base_url=os.getenv('SITEFOUNDRY_EMBEDDING_BASE_URL', 'https://api.openai.com/v1'),
            embedding_model=os.getenv('SITEFOUNDRY_EMBEDDING_MODEL', 'text-embedding-3-small'),
            embedding_batch_size=int(os.getenv('SITEFOUNDRY_EMBEDDING_BATCH_SIZE', '32')),
            embedding_max_attempts=int(os.getenv('SITEFOUNDRY_EMBEDDING_MAX_ATTEMPTS', '5')),
            embedding_retry_base_delay=float(os.getenv('SITEFOUNDRY_EMBEDDING_RETRY_BASE_DELAY', '0.4')),
            embedding_timeout=float(os.getenv('SITEFOUNDRY_EMBEDDING_TIMEOUT', '30')),
            chunk_size=int(os.getenv('SITEFOUNDRY_CHUNK_SIZE', '1050')),
            chunk_overlap=int(os.getenv('SITEFOUNDRY_CHUNK_OVERLAP', '150')),
            crawl_concurrency=int(os.getenv('SITEFOUNDRY_CRAWL_CONCURRENCY', '4')),
            fetch_timeout=float(os.getenv('SITEFOUNDRY_FETCH_TIMEOUT', '12')),
            max_pages_ceiling=int(os.getenv('SITEFOUNDRY_MAX_PAGES_CEILING', '200')),
            min_content_length=int(os.getenv('SITEFOUNDRY_MIN_CONTENT_LENGTH', '200')),
            user_agent=os.getenv('SITEFOUNDRY_USER_AGENT', 'SiteFoundryBot/1.0 (+https://sitefoundry.dev/bot)'),
            text_service_enabled=_env_bool('SITEFOUNDRY_TEXT_SERVICE_ENABLED', False),
            text_service_url=os.getenv('SITEFOUNDRY_TEXT_SERVICE_URL', 'https://r.jina.ai'),
            browser_render_enabled=_env_bool('SITEFOUNDRY_BROWSER_RENDER_ENABLED', False),
            browser_render_timeout=float(os.getenv('SITEFOUNDRY_BROWSER_RENDER_TIMEOUT', '15')),
            browser_network_idle_grace=float(os.getenv('SITEFOUNDRY_BROWSER_NETWORK_IDLE_GRACE', '1.5')),
            stale_run_minutes=int(os.getenv('SITEFOUNDRY_STALE_RUN_MINUTES', '15')),
            maintenance_interval_minutes=int(os.getenv('SITEFOUNDRY_MAINTENANCE_INTERVAL_MINUTES', '5')),
        )
