"""Ingestion job processing for SiteFoundry.

:class:`IngestionManager` runs one crawl job per tenant as a detached
asyncio task: discovery, then a fixed-size worker pool that fetches,
extracts, chunks, embeds and stores each page. The persisted
``ingestion_runs`` row is the source of truth; the in-memory entry only
mirrors it for fast polling and is lost on restart (the maintenance
sweep reconciles such runs).
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from config.settings import IngestionSettings
from indexer.models import IngestionRun, PageStatus, RunStatus, utcnow
from observability.logging import get_structured_logger
from pipelines.browser import BrowserRenderer
from pipelines.chunker import chunk_text
from pipelines.crawler import SiteCrawler
from pipelines.strategies import PageFetcher

logger = logging.getLogger(__name__)
slog = get_structured_logger(__name__, component="ingestion")

STALE_RUN_REASON = "Marked as failed by scheduler: stale heartbeat"
HEARTBEAT_INTERVAL_SECONDS = 60.0
MAX_FINISHED_IN_MEMORY = 100


class IngestionConflictError(Exception):
    """A tenant already has a running ingestion run."""

    def __init__(self, tenant_id: str, run_id: str):
        super().__init__(f"Ingestion already running for tenant {tenant_id} (run {run_id})")
        self.tenant_id = tenant_id
        self.run_id = run_id


class CancellationToken:
    """Cooperative cancellation flag handed to a job's workers."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self):
        await self._event.wait()


@dataclass
class ActiveJob:
    run: IngestionRun
    token: CancellationToken = field(default_factory=CancellationToken)
    task: Optional[asyncio.Task] = None
    progress_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


async def run_with_concurrency(items: Sequence,
                               concurrency: int,
                               handler: Callable[[object], Awaitable[None]],
                               should_stop: Optional[Callable[[], Awaitable[bool]]] = None) -> None:
    """Process ``items`` with at most ``concurrency`` workers sharing one cursor.

    Each worker checks ``should_stop`` before taking the next item; work
    already started is never interrupted. An exception from ``handler``
    stops the pool and propagates.
    """
    cursor = 0

    async def worker():
        nonlocal cursor
        while True:
            if should_stop is not None and await should_stop():
                return
            if cursor >= len(items):
                return
            item = items[cursor]
            cursor += 1
            await handler(item)

    workers = [asyncio.create_task(worker()) for _ in range(max(1, min(concurrency, len(items))))]
    try:
        await asyncio.gather(*workers)
    except BaseException:
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        raise


class IngestionManager:
    """Starts, tracks, cancels and reconciles ingestion runs."""

    def __init__(self, store, embedder,
                 settings: Optional[IngestionSettings] = None,
                 crawler: Optional[SiteCrawler] = None,
                 fetcher: Optional[PageFetcher] = None,
                 renderer: Optional[BrowserRenderer] = None):
        """
        Args:
            store: Storage adapter (SQLite or PostgreSQL)
            embedder: Client exposing ``embed_batch`` and ``close``
            settings: Pipeline settings, defaults when omitted
            crawler: Discovery/fetch client, built from settings when omitted
            fetcher: Strategy ladder, built from settings when omitted
            renderer: Shared headless browser, built from settings when omitted
        """
        self.settings = settings or IngestionSettings()
        self.store = store
        self.embedder = embedder
        self.renderer = renderer or BrowserRenderer.from_settings(self.settings)
        self.crawler = crawler or SiteCrawler.from_settings(self.settings, renderer=self.renderer)
        self.fetcher = fetcher or PageFetcher.from_settings(self.settings, self.crawler, self.renderer)
        self._jobs: Dict[str, ActiveJob] = {}
        self._start_lock = asyncio.Lock()

    # Job control

    async def start_job(self, tenant_id: str, website_url: str, max_pages: int,
                        seed_urls: Optional[Iterable[str]] = None,
                        is_resync: bool = False) -> str:
        """Create a run and start crawling in the background.

        Returns the run id immediately.

        Raises:
            IngestionConflictError: if the tenant already has a running run.
        """
        async with self._start_lock:
            for job in self._jobs.values():
                if job.run.tenant_id == tenant_id and job.run.status is RunStatus.RUNNING:
                    raise IngestionConflictError(tenant_id, job.run.id)

            existing = await self.store.find_running_run(tenant_id)
            if existing is not None:
                raise IngestionConflictError(tenant_id, existing.id)

            run = await self.store.create_run(tenant_id, website_url, max_pages)
            job = ActiveJob(run=run)
            self._jobs[run.id] = job
            job.task = asyncio.create_task(
                self._execute(job, list(seed_urls or []), is_resync),
                name=f"ingestion-{run.id}"
            )

        slog.info("Ingestion run started", run_id=run.id, tenant_id=tenant_id,
                  website_url=website_url, max_pages=max_pages, resync=is_resync)
        return run.id

    async def get_status(self, run_id: str) -> Optional[IngestionRun]:
        """Current run state: the in-memory entry when present, else the persisted row."""
        job = self._jobs.get(run_id)
        if job is not None:
            return replace(job.run)
        return await self.store.get_run(run_id)

    async def cancel(self, run_id: str) -> bool:
        """Request cancellation. Idempotent; returns False when the run is not running."""
        job = self._jobs.get(run_id)
        if job is not None:
            if job.run.status is not RunStatus.RUNNING:
                return False
            job.token.cancel()
            job.run.cancel_requested = True

        applied = await self.store.request_cancel(run_id)
        if applied or job is not None:
            slog.info("Cancellation requested", run_id=run_id)
        return applied or job is not None

    async def wait(self, run_id: str, timeout: Optional[float] = None) -> Optional[IngestionRun]:
        """Wait for a run started by this manager to finish and return its final state."""
        job = self._jobs.get(run_id)
        if job is not None and job.task is not None:
            await asyncio.wait_for(asyncio.shield(job.task), timeout)
        return await self.get_status(run_id)

    async def mark_stuck_runs_as_failed(self) -> int:
        """Fail running runs whose heartbeat is older than the staleness threshold."""
        stale_before = utcnow() - timedelta(minutes=self.settings.stale_run_minutes)
        run_ids = await self.store.fail_stale_runs(stale_before, STALE_RUN_REASON)

        for run_id in run_ids:
            job = self._jobs.get(run_id)
            if job is None:
                continue
            job.token.cancel()
            job.run.status = RunStatus.FAILED
            job.run.error = STALE_RUN_REASON
            job.run.finished_at = utcnow()

        if run_ids:
            logger.warning(f"Marked {len(run_ids)} stale ingestion run(s) as failed: {', '.join(run_ids)}")
        return len(run_ids)

    async def close(self, timeout: float = 30.0):
        """Cancel active jobs, wait for workers to drain and release resources."""
        pending = []
        for job in self._jobs.values():
            if job.task is not None and not job.task.done():
                job.token.cancel()
                pending.append(job.task)

        if pending:
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)

        await self.crawler.close()
        await self.embedder.close()
        await self.renderer.close()
        logger.info("Ingestion manager shutdown complete")

    # Execution

    async def _execute(self, job: ActiveJob, seed_urls: List[str], is_resync: bool):
        run = job.run
        heartbeat = asyncio.create_task(self._heartbeat(job))
        status, error = RunStatus.DONE, None
        try:
            if is_resync:
                await self.store.clear_tenant_data(run.tenant_id)

            urls = await self.crawler.discover(run.website_url, run.max_pages, seed_urls)
            async with job.progress_lock:
                run.pages_found = len(urls)
                await self._persist_progress(job)
            slog.info("Discovery finished", run_id=run.id, tenant_id=run.tenant_id, pages_found=len(urls))

            await run_with_concurrency(
                urls,
                self.settings.crawl_concurrency,
                lambda url: self._process_url(job, url),
                should_stop=lambda: self._should_stop(job),
            )

            # A cancel from another process may land after the last worker check
            if job.token.is_cancelled or await self._should_stop(job):
                status = RunStatus.CANCELED
            if run.pages_crawled == 0 and status is RunStatus.DONE:
                slog.error("Ingestion finished with 0 pages crawled", run_id=run.id,
                           tenant_id=run.tenant_id, website_url=run.website_url,
                           pages_found=run.pages_found)
        except asyncio.CancelledError:
            await self._finish(job, RunStatus.CANCELED, "Ingestion interrupted by shutdown")
            raise
        except Exception as e:
            logger.exception(f"Ingestion run {run.id} failed: {e}")
            status, error = RunStatus.FAILED, str(e) or e.__class__.__name__
        finally:
            heartbeat.cancel()

        await self._finish(job, status, error)

    async def _should_stop(self, job: ActiveJob) -> bool:
        if job.token.is_cancelled:
            return True
        # Another process may have flagged the persisted row
        persisted = await self.store.get_run(job.run.id)
        if persisted is not None and (persisted.cancel_requested or persisted.status.is_terminal):
            job.token.cancel()
            job.run.cancel_requested = True
            return True
        return False

    async def _process_url(self, job: ActiveJob, url: str):
        run = job.run
        chunks_written = 0
        page_error = None

        try:
            page = await self.fetcher.fetch_page(url)
            upsert = await self.store.upsert_page(
                run.tenant_id, url, page.title, page.content_text,
                PageStatus.OK, page.http_status
            )
            if upsert.changed:
                chunks = chunk_text(page.content_text, self.settings.chunk_size, self.settings.chunk_overlap)
                embeddings = await self.embedder.embed_batch([chunk.chunk_text for chunk in chunks])
                chunks_written = await self.store.replace_page_chunks(
                    run.tenant_id, upsert.page_id, chunks, embeddings
                )
            else:
                logger.debug(f"Unchanged content, skipping embeddings: {url}")
        except Exception as e:
            page_error = str(e) or e.__class__.__name__
            slog.warning("Page failed", run_id=run.id, tenant_id=run.tenant_id, url=url,
                         http_status=getattr(e, "http_status", None),
                         error_type=e.__class__.__name__, reason=page_error)
            await self.store.mark_page_failure(run.tenant_id, url, getattr(e, "http_status", None))

        async with job.progress_lock:
            run.pages_crawled += 1
            run.chunks_written += chunks_written
            if page_error and run.error is None:
                run.error = page_error
            await self._persist_progress(job)

    async def _persist_progress(self, job: ActiveJob):
        run = job.run
        applied = await self.store.update_run(
            run.id,
            pages_found=run.pages_found,
            pages_crawled=run.pages_crawled,
            chunks_written=run.chunks_written,
            error=run.error,
        )
        run.updated_at = utcnow()
        if not applied and not job.token.is_cancelled:
            logger.warning(f"Run {run.id} is no longer running in storage, stopping workers")
            job.token.cancel()

    async def _heartbeat(self, job: ActiveJob):
        # Keeps long discoveries and slow pages from looking stale
        while True:
            await asyncio.sleep(HEARTBEAT_INTERVAL_SECONDS)
            async with job.progress_lock:
                await self._persist_progress(job)

    async def _finish(self, job: ActiveJob, status: RunStatus, error: Optional[str] = None):
        run = job.run
        # A job-level failure replaces any earlier page error
        overwrite = status is RunStatus.FAILED and error is not None
        try:
            applied = await self.store.finish_run(run.id, status, error, overwrite_error=overwrite)
            if applied:
                persisted = await self.store.get_run(run.id)
                run.status = persisted.status if persisted is not None else status
                run.error = error if overwrite else (run.error or error)
                run.finished_at = run.updated_at = utcnow()
            else:
                # Reconciled elsewhere (stale sweep); the persisted terminal state stands
                persisted = await self.store.get_run(run.id)
                if persisted is not None:
                    job.run = persisted
        except Exception as e:
            logger.exception(f"Could not persist final state of run {run.id}: {e}")
            run.status = status
            run.error = (error if overwrite else run.error or error) or str(e)
            run.finished_at = utcnow()

        final = job.run
        slog.info("Ingestion run finished", run_id=final.id, tenant_id=final.tenant_id,
                  status=final.status.value, pages_found=final.pages_found,
                  pages_crawled=final.pages_crawled, chunks_written=final.chunks_written,
                  error=final.error)
        self._prune_finished()

    def _prune_finished(self):
        finished = [run_id for run_id, job in self._jobs.items()
                    if job.run.status is not RunStatus.RUNNING]
        for run_id in finished[:-MAX_FINISHED_IN_MEMORY]:
            del self._jobs[run_id]
