"""PostgreSQL storage adapter for SiteFoundry.

Production backend: pages, chunks and ingestion runs live in PostgreSQL,
chunk embeddings in a pgvector ``vector(1536)`` column ranked by cosine
distance (``<=>``).
"""

import logging
import uuid
from typing import List, Optional, Sequence
from datetime import datetime
from pathlib import Path

import asyncpg
from pydantic import BaseModel

from indexer.models import (
    ChunkMatch,
    IngestionRun,
    PageRecord,
    PageStatus,
    PageUpsertResult,
    RunStatus,
    StoreError,
    content_hash,
    vector_literal,
)
from pipelines.chunker import TextChunk

logger = logging.getLogger(__name__)

MAX_MATCH_LIMIT = 20
DEFAULT_MATCH_LIMIT = 8


class PostgresConfig(BaseModel):
    """PostgreSQL connection configuration."""
    host: str = "localhost"
    port: int = 5432
    database: str = "sitefoundry"
    user: str = "sitefoundry"
    password: str = ""
    min_connections: int = 2
    max_connections: int = 10
    command_timeout: int = 60


class PostgresAdapter:
    """PostgreSQL database adapter with pgvector support."""

    def __init__(self, config: PostgresConfig):
        self.config = config
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        """Initialize connection pool and ensure schema exists."""
        try:
            self.pool = await asyncpg.create_pool(
                host=self.config.host,
                port=self.config.port,
                database=self.config.database,
                user=self.config.user,
                password=self.config.password,
                min_size=self.config.min_connections,
                max_size=self.config.max_connections,
                command_timeout=self.config.command_timeout
            )
            logger.info("PostgreSQL connection pool initialized")

            await self.execute_schema(str(Path(__file__).parent / "postgres_schema.sql"))

        except Exception as e:
            logger.error(f"Failed to initialize PostgreSQL: {e}")
            raise

    async def close(self):
        """Close connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("PostgreSQL connection pool closed")

    async def execute_schema(self, schema_path: str):
        """Execute schema SQL file."""
        with open(schema_path, 'r', encoding='utf-8') as f:
            schema_sql = f.read()

        async with self.pool.acquire() as conn:
            await conn.execute(schema_sql)
        logger.info(f"Schema executed from {schema_path}")

    # Pages and chunks

    async def upsert_page(self, tenant_id: str, url: str, title: Optional[str],
                          content_text: str, status: PageStatus = PageStatus.OK,
                          http_status: Optional[int] = None) -> PageUpsertResult:
        """Insert or update a page; ``changed`` is true when the content hash moved."""
        new_hash = content_hash(content_text)
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    WITH previous AS (
                        SELECT content_hash FROM pages WHERE tenant_id = $1 AND url = $2
                    )
                    INSERT INTO pages (tenant_id, url, title, content_text, content_hash,
                                       status, http_status, last_crawled_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, NOW())
                    ON CONFLICT (tenant_id, url) DO UPDATE SET
                        title = EXCLUDED.title,
                        content_text = EXCLUDED.content_text,
                        content_hash = EXCLUDED.content_hash,
                        status = EXCLUDED.status,
                        http_status = EXCLUDED.http_status,
                        last_crawled_at = NOW(),
                        updated_at = NOW()
                    RETURNING id, (SELECT content_hash FROM previous) AS previous_hash,
                              EXISTS (SELECT 1 FROM previous) AS existed
                    """,
                    tenant_id, url, title, content_text, new_hash,
                    PageStatus(status).value, http_status
                )
        except asyncpg.PostgresError as e:
            raise StoreError(f"Failed to upsert page {url}: {e}") from e

        changed = not row["existed"] or row["previous_hash"] != new_hash
        return PageUpsertResult(page_id=row["id"], changed=changed)

    async def mark_page_failure(self, tenant_id: str, url: str,
                                http_status: Optional[int] = None) -> None:
        """Record a failed crawl; the cleared hash forces re-embedding next time."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO pages (tenant_id, url, status, http_status, content_hash, last_crawled_at)
                VALUES ($1, $2, 'failed', $3, NULL, NOW())
                ON CONFLICT (tenant_id, url) DO UPDATE SET
                    status = 'failed',
                    http_status = EXCLUDED.http_status,
                    content_hash = NULL,
                    last_crawled_at = NOW(),
                    updated_at = NOW()
                """,
                tenant_id, url, http_status
            )

    async def replace_page_chunks(self, tenant_id: str, page_id: int,
                                  chunks: Sequence[TextChunk],
                                  embeddings: Sequence[Sequence[float]]) -> int:
        """Atomically swap the chunk set of a page. Returns rows written."""
        if len(chunks) != len(embeddings):
            raise StoreError(
                f"Chunk/embedding length mismatch: {len(chunks)} chunks, {len(embeddings)} embeddings"
            )

        rows = [
            (tenant_id, page_id, chunk.chunk_index, chunk.chunk_text,
             chunk.token_estimate, vector_literal(embedding))
            for chunk, embedding in zip(chunks, embeddings)
        ]

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        "DELETE FROM chunks WHERE tenant_id = $1 AND page_id = $2",
                        tenant_id, page_id
                    )
                    if rows:
                        await conn.executemany(
                            """
                            INSERT INTO chunks (tenant_id, page_id, chunk_index, chunk_text,
                                                token_estimate, embedding)
                            VALUES ($1, $2, $3, $4, $5, $6::vector)
                            """,
                            rows
                        )
        except asyncpg.PostgresError as e:
            raise StoreError(f"Failed to replace chunks for page {page_id}: {e}") from e

        return len(rows)

    async def match_chunks(self, tenant_id: str, query_embedding: Sequence[float],
                           top_k: int = DEFAULT_MATCH_LIMIT) -> List[ChunkMatch]:
        """Tenant-scoped nearest chunks by cosine similarity."""
        if not query_embedding:
            return []
        limit = max(1, min(top_k if top_k is not None else DEFAULT_MATCH_LIMIT, MAX_MATCH_LIMIT))

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT c.id, c.page_id, p.url, c.chunk_index, c.chunk_text,
                       1 - (c.embedding <=> $2::vector) AS similarity
                FROM chunks c
                JOIN pages p ON p.id = c.page_id
                WHERE c.tenant_id = $1
                ORDER BY c.embedding <=> $2::vector
                LIMIT $3
                """,
                tenant_id, vector_literal(query_embedding), limit
            )

        return [
            ChunkMatch(
                chunk_id=row["id"],
                page_id=row["page_id"],
                url=row["url"],
                chunk_index=row["chunk_index"],
                chunk_text=row["chunk_text"],
                similarity=float(row["similarity"]),
            )
            for row in rows
        ]

    async def clear_tenant_data(self, tenant_id: str) -> None:
        """Delete every chunk and page belonging to ``tenant_id``."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM chunks WHERE tenant_id = $1", tenant_id)
                await conn.execute("DELETE FROM pages WHERE tenant_id = $1", tenant_id)
        logger.info(f"Cleared knowledge base for tenant {tenant_id}")

    async def get_page(self, tenant_id: str, url: str) -> Optional[PageRecord]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM pages WHERE tenant_id = $1 AND url = $2", tenant_id, url
            )
        return self._page_from_row(row) if row else None

    async def list_pages(self, tenant_id: str) -> List[PageRecord]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM pages WHERE tenant_id = $1 ORDER BY url", tenant_id
            )
        return [self._page_from_row(row) for row in rows]

    async def count_chunks(self, tenant_id: str, page_id: Optional[int] = None) -> int:
        async with self.pool.acquire() as conn:
            if page_id is None:
                return await conn.fetchval(
                    "SELECT COUNT(*) FROM chunks WHERE tenant_id = $1", tenant_id
                )
            return await conn.fetchval(
                "SELECT COUNT(*) FROM chunks WHERE tenant_id = $1 AND page_id = $2",
                tenant_id, page_id
            )

    @staticmethod
    def _page_from_row(row: asyncpg.Record) -> PageRecord:
        return PageRecord(
            id=row["id"],
            tenant_id=row["tenant_id"],
            url=row["url"],
            title=row["title"],
            content_text=row["content_text"],
            content_hash=row["content_hash"],
            status=PageStatus(row["status"]),
            http_status=row["http_status"],
            last_crawled_at=row["last_crawled_at"],
        )

    # Ingestion runs

    async def create_run(self, tenant_id: str, website_url: str, max_pages: int) -> IngestionRun:
        run = IngestionRun(
            id=uuid.uuid4().hex,
            tenant_id=tenant_id,
            website_url=website_url,
            max_pages=max_pages,
        )
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO ingestion_runs (id, tenant_id, website_url, max_pages, status,
                                            started_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                run.id, tenant_id, website_url, max_pages, run.status.value,
                run.started_at, run.updated_at
            )
        return run

    async def get_run(self, run_id: str) -> Optional[IngestionRun]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM ingestion_runs WHERE id = $1", run_id)
        return IngestionRun.from_dict(dict(row)) if row else None

    async def find_running_run(self, tenant_id: str) -> Optional[IngestionRun]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM ingestion_runs
                WHERE tenant_id = $1 AND status = 'running'
                ORDER BY started_at DESC LIMIT 1
                """,
                tenant_id
            )
        return IngestionRun.from_dict(dict(row)) if row else None

    async def update_run(self, run_id: str, *, pages_found: Optional[int] = None,
                         pages_crawled: Optional[int] = None,
                         chunks_written: Optional[int] = None,
                         error: Optional[str] = None) -> bool:
        """Persist progress and bump the heartbeat while the run is still running."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE ingestion_runs SET
                    pages_found = COALESCE($2, pages_found),
                    pages_crawled = COALESCE($3, pages_crawled),
                    chunks_written = COALESCE($4, chunks_written),
                    error = COALESCE(error, $5),
                    updated_at = NOW()
                WHERE id = $1 AND status = 'running'
                """,
                run_id, pages_found, pages_crawled, chunks_written, error
            )
        return result.endswith(" 1")

    async def request_cancel(self, run_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE ingestion_runs SET cancel_requested = TRUE, updated_at = NOW()
                WHERE id = $1 AND status = 'running'
                """,
                run_id
            )
        return result.endswith(" 1")

    async def finish_run(self, run_id: str, status: RunStatus,
                         error: Optional[str] = None, overwrite_error: bool = False) -> bool:
        """Move a running run to a terminal state. Returns False if it already left running.

        A ``done`` run with a pending cancel request finishes ``canceled``.
        ``error`` fills an empty error column unless ``overwrite_error`` is set.
        """
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE ingestion_runs
                SET status = CASE WHEN $2::text = 'done' AND cancel_requested THEN 'canceled' ELSE $2::text END,
                    error = CASE WHEN $4::boolean THEN $3::text ELSE COALESCE(error, $3::text) END,
                    finished_at = NOW(), updated_at = NOW()
                WHERE id = $1 AND status = 'running'
                """,
                run_id, RunStatus(status).value, error, overwrite_error
            )
        return result.endswith(" 1")

    async def fail_stale_runs(self, stale_before: datetime, reason: str) -> List[str]:
        """Fail every running run whose heartbeat predates ``stale_before``."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                UPDATE ingestion_runs
                SET status = 'failed', error = $2, finished_at = NOW(), updated_at = NOW()
                WHERE status = 'running' AND updated_at < $1
                RETURNING id
                """,
                stale_before, reason
            )
        return [row["id"] for row in rows]
