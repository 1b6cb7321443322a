"""SQLite storage adapter for SiteFoundry.

Development and test backend with the same async interface as
:class:`indexer.postgres_adapter.PostgresAdapter`. Embeddings are stored as
float32 BLOBs and ranked with numpy cosine similarity.
"""

import sqlite3
import logging
import uuid
from typing import List, Optional, Sequence
from datetime import datetime, timezone
from pathlib import Path

import numpy as np

from indexer.models import (
    ChunkMatch,
    IngestionRun,
    PageRecord,
    PageStatus,
    PageUpsertResult,
    RunStatus,
    StoreError,
    content_hash,
    utcnow,
)
from pipelines.chunker import TextChunk

logger = logging.getLogger(__name__)

MAX_MATCH_LIMIT = 20
DEFAULT_MATCH_LIMIT = 8


def _ts(value: Optional[datetime] = None) -> str:
    # Fixed-width UTC timestamps so string comparison orders correctly
    value = value or utcnow()
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def clamp_match_limit(top_k: Optional[int]) -> int:
    return max(1, min(top_k if top_k is not None else DEFAULT_MATCH_LIMIT, MAX_MATCH_LIMIT))


class SQLiteAdapter:
    """SQLite database adapter with unified interface."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None

    async def initialize(self):
        """Initialize SQLite connection and ensure schema exists."""
        try:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA foreign_keys = ON")

            schema_path = Path(__file__).parent / "sqlite_schema.sql"
            with open(schema_path, 'r', encoding='utf-8') as f:
                self.conn.executescript(f.read())
            self.conn.commit()

            logger.info(f"SQLite adapter initialized: {self.db_path}")

        except Exception as e:
            logger.error(f"Failed to initialize SQLite: {e}")
            raise

    async def close(self):
        """Close SQLite connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("SQLite connection closed")

    # Pages and chunks

    async def upsert_page(self, tenant_id: str, url: str, title: Optional[str],
                          content_text: str, status: PageStatus = PageStatus.OK,
                          http_status: Optional[int] = None) -> PageUpsertResult:
        """Insert or update a page; ``changed`` is true when the content hash moved."""
        new_hash = content_hash(content_text)
        now = _ts()

        with self.conn:
            row = self.conn.execute(
                "SELECT id, content_hash FROM pages WHERE tenant_id = ? AND url = ?",
                (tenant_id, url)
            ).fetchone()

            if row is None:
                cursor = self.conn.execute(
                    """
                    INSERT INTO pages (tenant_id, url, title, content_text, content_hash,
                                       status, http_status, last_crawled_at, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (tenant_id, url, title, content_text, new_hash,
                     PageStatus(status).value, http_status, now, now, now)
                )
                return PageUpsertResult(page_id=cursor.lastrowid, changed=True)

            self.conn.execute(
                """
                UPDATE pages
                SET title = ?, content_text = ?, content_hash = ?, status = ?,
                    http_status = ?, last_crawled_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (title, content_text, new_hash, PageStatus(status).value,
                 http_status, now, now, row["id"])
            )
            return PageUpsertResult(page_id=row["id"], changed=row["content_hash"] != new_hash)

    async def mark_page_failure(self, tenant_id: str, url: str,
                                http_status: Optional[int] = None) -> None:
        """Record a failed crawl; the cleared hash forces re-embedding next time."""
        now = _ts()
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO pages (tenant_id, url, status, http_status, content_hash,
                                   last_crawled_at, created_at, updated_at)
                VALUES (?, ?, 'failed', ?, NULL, ?, ?, ?)
                ON CONFLICT (tenant_id, url) DO UPDATE SET
                    status = 'failed',
                    http_status = excluded.http_status,
                    content_hash = NULL,
                    last_crawled_at = excluded.last_crawled_at,
                    updated_at = excluded.updated_at
                """,
                (tenant_id, url, http_status, now, now, now)
            )

    async def replace_page_chunks(self, tenant_id: str, page_id: int,
                                  chunks: Sequence[TextChunk],
                                  embeddings: Sequence[Sequence[float]]) -> int:
        """Atomically swap the chunk set of a page. Returns rows written."""
        if len(chunks) != len(embeddings):
            raise StoreError(
                f"Chunk/embedding length mismatch: {len(chunks)} chunks, {len(embeddings)} embeddings"
            )

        now = _ts()
        rows = [
            (tenant_id, page_id, chunk.chunk_index, chunk.chunk_text, chunk.token_estimate,
             np.asarray(embedding, dtype=np.float32).tobytes(), now)
            for chunk, embedding in zip(chunks, embeddings)
        ]

        with self.conn:
            self.conn.execute(
                "DELETE FROM chunks WHERE tenant_id = ? AND page_id = ?", (tenant_id, page_id)
            )
            self.conn.executemany(
                """
                INSERT INTO chunks (tenant_id, page_id, chunk_index, chunk_text,
                                    token_estimate, embedding, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                rows
            )
        return len(rows)

    async def match_chunks(self, tenant_id: str, query_embedding: Sequence[float],
                           top_k: int = DEFAULT_MATCH_LIMIT) -> List[ChunkMatch]:
        """Tenant-scoped nearest chunks by cosine similarity."""
        limit = clamp_match_limit(top_k)
        query = np.asarray(query_embedding, dtype=np.float32)
        query_norm = np.linalg.norm(query)
        if query.size == 0 or query_norm == 0:
            return []

        rows = self.conn.execute(
            """
            SELECT c.id, c.page_id, c.chunk_index, c.chunk_text, c.embedding, p.url
            FROM chunks c
            JOIN pages p ON p.id = c.page_id
            WHERE c.tenant_id = ?
            """,
            (tenant_id,)
        ).fetchall()

        matches = []
        for row in rows:
            vector = np.frombuffer(row["embedding"], dtype=np.float32)
            if vector.shape != query.shape:
                continue
            norm = np.linalg.norm(vector)
            similarity = float(np.dot(query, vector) / (query_norm * norm)) if norm else 0.0
            matches.append(ChunkMatch(
                chunk_id=row["id"],
                page_id=row["page_id"],
                url=row["url"],
                chunk_index=row["chunk_index"],
                chunk_text=row["chunk_text"],
                similarity=similarity,
            ))

        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches[:limit]

    async def clear_tenant_data(self, tenant_id: str) -> None:
        """Delete every chunk and page belonging to ``tenant_id``."""
        with self.conn:
            self.conn.execute("DELETE FROM chunks WHERE tenant_id = ?", (tenant_id,))
            self.conn.execute("DELETE FROM pages WHERE tenant_id = ?", (tenant_id,))
        logger.info(f"Cleared knowledge base for tenant {tenant_id}")

    async def get_page(self, tenant_id: str, url: str) -> Optional[PageRecord]:
        row = self.conn.execute(
            "SELECT * FROM pages WHERE tenant_id = ? AND url = ?", (tenant_id, url)
        ).fetchone()
        return self._page_from_row(row) if row else None

    async def list_pages(self, tenant_id: str) -> List[PageRecord]:
        rows = self.conn.execute(
            "SELECT * FROM pages WHERE tenant_id = ? ORDER BY url", (tenant_id,)
        ).fetchall()
        return [self._page_from_row(row) for row in rows]

    async def count_chunks(self, tenant_id: str, page_id: Optional[int] = None) -> int:
        if page_id is None:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM chunks WHERE tenant_id = ?", (tenant_id,)
            ).fetchone()
        else:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM chunks WHERE tenant_id = ? AND page_id = ?",
                (tenant_id, page_id)
            ).fetchone()
        return row[0]

    @staticmethod
    def _page_from_row(row: sqlite3.Row) -> PageRecord:
        crawled = row["last_crawled_at"]
        return PageRecord(
            id=row["id"],
            tenant_id=row["tenant_id"],
            url=row["url"],
            title=row["title"],
            content_text=row["content_text"],
            content_hash=row["content_hash"],
            status=PageStatus(row["status"]),
            http_status=row["http_status"],
            last_crawled_at=datetime.fromisoformat(crawled) if crawled else None,
        )

    # Ingestion runs

    async def create_run(self, tenant_id: str, website_url: str, max_pages: int) -> IngestionRun:
        run = IngestionRun(
            id=uuid.uuid4().hex,
            tenant_id=tenant_id,
            website_url=website_url,
            max_pages=max_pages,
        )
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO ingestion_runs (id, tenant_id, website_url, max_pages, status,
                                            started_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (run.id, tenant_id, website_url, max_pages, run.status.value,
                 _ts(run.started_at), _ts(run.updated_at))
            )
        return run

    async def get_run(self, run_id: str) -> Optional[IngestionRun]:
        row = self.conn.execute(
            "SELECT * FROM ingestion_runs WHERE id = ?", (run_id,)
        ).fetchone()
        return IngestionRun.from_dict(dict(row)) if row else None

    async def find_running_run(self, tenant_id: str) -> Optional[IngestionRun]:
        row = self.conn.execute(
            """
            SELECT * FROM ingestion_runs
            WHERE tenant_id = ? AND status = 'running'
            ORDER BY started_at DESC LIMIT 1
            """,
            (tenant_id,)
        ).fetchone()
        return IngestionRun.from_dict(dict(row)) if row else None

    async def update_run(self, run_id: str, *, pages_found: Optional[int] = None,
                         pages_crawled: Optional[int] = None,
                         chunks_written: Optional[int] = None,
                         error: Optional[str] = None) -> bool:
        """Persist progress and bump the heartbeat while the run is still running.

        ``error`` only fills an empty error column; the first error wins.
        """
        assignments = ["updated_at = ?"]
        params: list = [_ts()]
        for column, value in (("pages_found", pages_found),
                              ("pages_crawled", pages_crawled),
                              ("chunks_written", chunks_written)):
            if value is not None:
                assignments.append(f"{column} = ?")
                params.append(value)
        if error is not None:
            assignments.append("error = COALESCE(error, ?)")
            params.append(error)
        params.append(run_id)

        with self.conn:
            cursor = self.conn.execute(
                f"UPDATE ingestion_runs SET {', '.join(assignments)} "
                f"WHERE id = ? AND status = 'running'",
                params
            )
        return cursor.rowcount > 0

    async def request_cancel(self, run_id: str) -> bool:
        with self.conn:
            cursor = self.conn.execute(
                """
                UPDATE ingestion_runs SET cancel_requested = 1, updated_at = ?
                WHERE id = ? AND status = 'running'
                """,
                (_ts(), run_id)
            )
        return cursor.rowcount > 0

    async def finish_run(self, run_id: str, status: RunStatus,
                         error: Optional[str] = None, overwrite_error: bool = False) -> bool:
        """Move a running run to a terminal state. Returns False if it already left running.

        A ``done`` run with a pending cancel request finishes ``canceled``.
        ``error`` fills an empty error column unless ``overwrite_error`` is set.
        """
        now = _ts()
        error_sql = "?" if overwrite_error else "COALESCE(error, ?)"
        with self.conn:
            cursor = self.conn.execute(
                f"""
                UPDATE ingestion_runs
                SET status = CASE WHEN ? = 'done' AND cancel_requested THEN 'canceled' ELSE ? END,
                    error = {error_sql}, finished_at = ?, updated_at = ?
                WHERE id = ? AND status = 'running'
                """,
                (RunStatus(status).value, RunStatus(status).value, error, now, now, run_id)
            )
        return cursor.rowcount > 0

    async def fail_stale_runs(self, stale_before: datetime, reason: str) -> List[str]:
        """Fail every running run whose heartbeat predates ``stale_before``."""
        now = _ts()
        with self.conn:
            rows = self.conn.execute(
                "SELECT id FROM ingestion_runs WHERE status = 'running' AND updated_at < ?",
                (_ts(stale_before),)
            ).fetchall()
            run_ids = [row["id"] for row in rows]
            self.conn.executemany(
                """
                UPDATE ingestion_runs
                SET status = 'failed', error = ?, finished_at = ?, updated_at = ?
                WHERE id = ? AND status = 'running'
                """,
                [(reason, now, now, run_id) for run_id in run_ids]
            )
        return run_ids
