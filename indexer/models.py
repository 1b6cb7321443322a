"""Records shared by the SiteFoundry storage adapters.

Pages and chunks are tenant-scoped; an :class:`IngestionRun` row is the
durable source of truth for a crawl job's status and progress.
"""

import hashlib
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class StoreError(Exception):
    """Raised when the vector store rejects or fails an operation."""
    pass


class RunStatus(str, Enum):
    """Ingestion run states; everything but RUNNING is terminal."""
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class PageStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def content_hash(text: str) -> str:
    """SHA-256 hex digest of extracted page text."""
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()


def vector_literal(embedding: List[float]) -> str:
    """pgvector text form: ``[0.1,0.2,...]``."""
    return "[" + ",".join(repr(float(v)) for v in embedding) + "]"


@dataclass
class PageUpsertResult:
    page_id: int
    changed: bool


@dataclass
class PageRecord:
    """A crawled page as stored."""
    id: int
    tenant_id: str
    url: str
    title: Optional[str]
    content_text: Optional[str]
    content_hash: Optional[str]
    status: PageStatus
    http_status: Optional[int] = None
    last_crawled_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        if self.last_crawled_at:
            data["last_crawled_at"] = self.last_crawled_at.isoformat()
        return data


@dataclass
class ChunkMatch:
    """A nearest-neighbour hit returned by ``match_chunks``."""
    chunk_id: int
    page_id: int
    url: str
    chunk_index: int
    chunk_text: str
    similarity: float


@dataclass
class IngestionRun:
    """Persisted state of one crawl invocation."""
    id: str
    tenant_id: str
    website_url: str
    max_pages: int
    status: RunStatus = RunStatus.RUNNING
    pages_found: int = 0
    pages_crawled: int = 0
    chunks_written: int = 0
    error: Optional[str] = None
    cancel_requested: bool = False
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)

    _DATETIME_FIELDS = ("started_at", "finished_at", "updated_at")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["status"] = self.status.value
        for name in self._DATETIME_FIELDS:
            if data[name]:
                data[name] = data[name].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IngestionRun":
        """Create IngestionRun from a dictionary or database row mapping."""
        values = dict(data)
        for name in cls._DATETIME_FIELDS:
            value = values.get(name)
            if isinstance(value, str):
                values[name] = datetime.fromisoformat(value)
        values["status"] = RunStatus(values.get("status", RunStatus.RUNNING))
        values["cancel_requested"] = bool(values.get("cancel_requested", False))
        return cls(**values)
