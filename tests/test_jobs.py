"""Tests for the ingestion job manager."""

import asyncio
import logging
from datetime import timedelta

import pytest
from aiohttp import web

from config.settings import IngestionSettings
from indexer.embeddings import EmbeddingError
from indexer.models import PageStatus, RunStatus, StoreError, utcnow
from pipelines.browser import BrowserRenderer
from pipelines.crawler import PageFetchError
from pipelines.strategies import ExtractedPage
from server.jobs import (
    STALE_RUN_REASON,
    IngestionConflictError,
    IngestionManager,
    run_with_concurrency,
)

GOOD_PAGE_PARAGRAPHS = [
    "Acme Cloud backs up every workspace automatically each night and keeps thirty daily snapshots.",
    "Administrators can restore a single document or an entire workspace from the snapshot browser.",
    "Restores never overwrite current data; restored items appear in a dedicated recovery folder.",
    "Snapshots are encrypted at rest with keys that rotate every ninety days without downtime.",
    "Enterprise plans add hourly snapshots and a retention window configurable up to one year.",
    "Exports of any snapshot can be requested as a compressed archive delivered by signed link.",
    "Audit logs record who requested a restore or export along with the affected resources.",
    "Backups are stored in a second region so a regional outage never affects recovery options.",
    "Support engineers cannot read snapshot contents; they only see sizes and timestamps.",
    "Deleted workspaces remain recoverable for fourteen days before their snapshots are purged.",
    "The status page lists the most recent successful backup time for every region we operate.",
    "Questions about backups can be sent to the support team from the help centre at any time.",
]


class FakeCrawler:
    def __init__(self, urls=None, error=None):
        self.urls = list(urls or [])
        self.error = error
        self.closed = False

    async def discover(self, website_url, max_pages, seed_urls=None):
        if self.error is not None:
            raise self.error
        return self.urls[:max_pages]

    async def close(self):
        self.closed = True


class GatedFetcher:
    """Blocks every fetch until ``gate`` is opened."""

    def __init__(self):
        self.gate = asyncio.Event()
        self.started = []

    async def fetch_page(self, url):
        self.started.append(url)
        await self.gate.wait()
        return ExtractedPage(url, "Title", f"Content of {url}. " * 20, 200, "http")


class StaticFetcher:
    """Serves fixed content per URL, or raises the error registered for it."""

    def __init__(self, errors=None):
        self.errors = dict(errors or {})

    async def fetch_page(self, url):
        if url in self.errors:
            raise self.errors[url]
        return ExtractedPage(url, "Title", f"Content of {url}. " * 20, 200, "http")


async def _wait_until(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
async def make_manager(store, embedder):
    managers = []

    def _make(**kwargs) -> IngestionManager:
        kwargs.setdefault("renderer", BrowserRenderer(enabled=False))
        manager = IngestionManager(store, kwargs.pop("embedder", embedder), **kwargs)
        managers.append(manager)
        return manager

    yield _make

    for manager in managers:
        await manager.close(timeout=5)


def scenario_site() -> web.Application:
    async def sitemap(request):
        origin = f"{request.scheme}://{request.host}"
        locs = "".join(f"<url><loc>{origin}{path}</loc></url>" for path in ("/missing", "/good", "/slow"))
        return web.Response(
            text=f'<?xml version="1.0"?><urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{locs}</urlset>',
            content_type="application/xml",
        )

    async def good(request):
        paragraphs = "".join(f"<p>{p}</p>" for p in GOOD_PAGE_PARAGRAPHS)
        return web.Response(
            text=f"<html><head><title>Backups</title></head><body><article><h1>Backups</h1>{paragraphs}"
                 f"</article></body></html>",
            content_type="text/html",
        )

    async def slow(request):
        await asyncio.sleep(2)
        return web.Response(text="<html><body>late</body></html>", content_type="text/html")

    app = web.Application()
    app.router.add_get("/sitemap.xml", sitemap)
    app.router.add_get("/good", good)
    app.router.add_get("/slow", slow)
    return app


class TestRunWithConcurrency:

    @pytest.mark.asyncio
    async def test_processes_every_item_within_limit(self):
        active = 0
        peak = 0
        seen = []

        async def handler(item):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            seen.append(item)
            active -= 1

        await run_with_concurrency(list(range(10)), 3, handler)

        assert sorted(seen) == list(range(10))
        assert peak == 3

    @pytest.mark.asyncio
    async def test_stop_before_start_processes_nothing(self):
        seen = []

        async def handler(item):
            seen.append(item)

        async def stop():
            return True

        await run_with_concurrency([1, 2, 3], 2, handler, should_stop=stop)
        assert seen == []

    @pytest.mark.asyncio
    async def test_handler_error_propagates(self):
        async def handler(item):
            if item == 2:
                raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await run_with_concurrency([1, 2, 3], 1, handler)

    @pytest.mark.asyncio
    async def test_empty_input(self):
        async def handler(item):
            raise AssertionError("never called")

        await run_with_concurrency([], 4, handler)


class TestConflicts:

    @pytest.mark.asyncio
    async def test_second_start_for_same_tenant_conflicts(self, make_manager):
        fetcher = GatedFetcher()
        manager = make_manager(crawler=FakeCrawler(["https://a.example/"]), fetcher=fetcher)

        run_id = await manager.start_job("t1", "https://a.example", 5)
        with pytest.raises(IngestionConflictError) as exc_info:
            await manager.start_job("t1", "https://a.example", 5)
        assert exc_info.value.run_id == run_id

        other = await manager.start_job("t2", "https://b.example", 5)
        assert other != run_id

        fetcher.gate.set()
        await manager.wait(run_id, timeout=5)
        await manager.wait(other, timeout=5)

    @pytest.mark.asyncio
    async def test_concurrent_starts_yield_one_run(self, make_manager, store):
        fetcher = GatedFetcher()
        manager = make_manager(crawler=FakeCrawler(["https://a.example/"]), fetcher=fetcher)

        results = await asyncio.gather(
            manager.start_job("t1", "https://a.example", 5),
            manager.start_job("t1", "https://a.example", 5),
            return_exceptions=True,
        )

        run_ids = [r for r in results if isinstance(r, str)]
        conflicts = [r for r in results if isinstance(r, IngestionConflictError)]
        assert len(run_ids) == 1 and len(conflicts) == 1
        assert (await store.find_running_run("t1")).id == run_ids[0]

        fetcher.gate.set()
        await manager.wait(run_ids[0], timeout=5)

    @pytest.mark.asyncio
    async def test_persisted_running_row_conflicts(self, make_manager, store):
        existing = await store.create_run("t1", "https://a.example", 5)
        manager = make_manager(crawler=FakeCrawler(), fetcher=GatedFetcher())

        with pytest.raises(IngestionConflictError) as exc_info:
            await manager.start_job("t1", "https://a.example", 5)
        assert exc_info.value.run_id == existing.id


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_page(self, make_manager, store):
        urls = [f"https://a.example/p{i}" for i in range(10)]
        fetcher = GatedFetcher()
        manager = make_manager(
            settings=IngestionSettings(crawl_concurrency=2),
            crawler=FakeCrawler(urls),
            fetcher=fetcher,
        )

        run_id = await manager.start_job("t1", "https://a.example", 10)
        await _wait_until(lambda: len(fetcher.started) == 2)

        assert await manager.cancel(run_id) is True
        assert await manager.cancel(run_id) is True
        fetcher.gate.set()
        run = await manager.wait(run_id, timeout=5)

        assert run.status is RunStatus.CANCELED
        assert run.pages_found == 10
        assert run.pages_crawled == 2
        assert len(fetcher.started) == 2

        persisted = await store.get_run(run_id)
        assert persisted.status is RunStatus.CANCELED
        assert persisted.cancel_requested is True
        assert persisted.finished_at is not None

        assert await manager.cancel(run_id) is False

    @pytest.mark.asyncio
    async def test_cancel_flag_set_by_another_process_is_honoured(self, make_manager, store):
        urls = [f"https://a.example/p{i}" for i in range(6)]
        fetcher = GatedFetcher()
        manager = make_manager(
            settings=IngestionSettings(crawl_concurrency=1),
            crawler=FakeCrawler(urls),
            fetcher=fetcher,
        )

        run_id = await manager.start_job("t1", "https://a.example", 10)
        await _wait_until(lambda: len(fetcher.started) == 1)

        assert await store.request_cancel(run_id)
        fetcher.gate.set()
        run = await manager.wait(run_id, timeout=5)

        assert run.status is RunStatus.CANCELED
        assert run.pages_crawled == 1

    @pytest.mark.asyncio
    async def test_cancel_after_last_page_still_cancels(self, make_manager, store, monkeypatch):
        async def crawl_then_cancel(items, concurrency, handler, should_stop=None):
            await run_with_concurrency(items, concurrency, handler, should_stop)
            running = await store.find_running_run("t1")
            assert await store.request_cancel(running.id)

        monkeypatch.setattr("server.jobs.run_with_concurrency", crawl_then_cancel)
        manager = make_manager(crawler=FakeCrawler(["https://a.example/a"]), fetcher=StaticFetcher())

        run_id = await manager.start_job("t1", "https://a.example", 5)
        run = await manager.wait(run_id, timeout=5)

        assert run.status is RunStatus.CANCELED
        assert run.pages_crawled == 1
        assert (await store.get_run(run_id)).status is RunStatus.CANCELED

    @pytest.mark.asyncio
    async def test_cancel_racing_final_write_wins(self, make_manager, store, monkeypatch):
        finish_run = store.finish_run

        async def cancel_then_finish(run_id, status, error=None, overwrite_error=False):
            await store.request_cancel(run_id)
            return await finish_run(run_id, status, error, overwrite_error=overwrite_error)

        monkeypatch.setattr(store, "finish_run", cancel_then_finish)
        manager = make_manager(crawler=FakeCrawler(["https://a.example/a"]), fetcher=StaticFetcher())

        run_id = await manager.start_job("t1", "https://a.example", 5)
        run = await manager.wait(run_id, timeout=5)

        assert run.status is RunStatus.CANCELED
        assert (await store.get_run(run_id)).status is RunStatus.CANCELED

    @pytest.mark.asyncio
    async def test_cancel_unknown_run(self, make_manager):
        manager = make_manager(crawler=FakeCrawler(), fetcher=GatedFetcher())
        assert await manager.cancel("does-not-exist") is False
        assert await manager.get_status("does-not-exist") is None


class TestStaleRuns:

    @pytest.mark.asyncio
    async def test_orphaned_run_is_failed(self, make_manager, store):
        orphan = await store.create_run("t1", "https://a.example", 5)
        old = (utcnow() - timedelta(minutes=40)).isoformat(timespec="microseconds")
        store.conn.execute("UPDATE ingestion_runs SET updated_at = ? WHERE id = ?", (old, orphan.id))
        store.conn.commit()

        manager = make_manager(settings=IngestionSettings(stale_run_minutes=15),
                               crawler=FakeCrawler(), fetcher=GatedFetcher())

        assert await manager.mark_stuck_runs_as_failed() == 1
        persisted = await store.get_run(orphan.id)
        assert persisted.status is RunStatus.FAILED
        assert persisted.error == STALE_RUN_REASON

        assert await manager.mark_stuck_runs_as_failed() == 0
        assert not await store.finish_run(orphan.id, RunStatus.DONE)
        assert (await store.get_run(orphan.id)).status is RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_swept_live_run_never_reverts(self, make_manager, store):
        fetcher = GatedFetcher()
        manager = make_manager(crawler=FakeCrawler(["https://a.example/a", "https://a.example/b"]),
                               fetcher=fetcher)
        run_id = await manager.start_job("t1", "https://a.example", 5)
        await _wait_until(lambda: len(fetcher.started) >= 1)

        old = (utcnow() - timedelta(hours=1)).isoformat(timespec="microseconds")
        store.conn.execute("UPDATE ingestion_runs SET updated_at = ? WHERE id = ?", (old, run_id))
        store.conn.commit()

        assert await manager.mark_stuck_runs_as_failed() == 1
        fetcher.gate.set()
        run = await manager.wait(run_id, timeout=5)

        assert run.status is RunStatus.FAILED
        assert run.error == STALE_RUN_REASON
        persisted = await store.get_run(run_id)
        assert persisted.status is RunStatus.FAILED
        assert persisted.error == STALE_RUN_REASON


class TestExecution:

    @pytest.mark.asyncio
    async def test_discovery_failure_fails_the_run(self, make_manager, store):
        manager = make_manager(crawler=FakeCrawler(error=ValueError("Invalid website URL: nope")),
                               fetcher=GatedFetcher())

        run_id = await manager.start_job("t1", "nope", 5)
        run = await manager.wait(run_id, timeout=5)

        assert run.status is RunStatus.FAILED
        assert run.error == "Invalid website URL: nope"
        assert (await store.get_run(run_id)).status is RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_storage_failure_replaces_page_error(self, make_manager, store, monkeypatch):
        urls = [f"https://a.example/{i}" for i in (1, 2, 3)]
        fetcher = StaticFetcher({url: PageFetchError(f"HTTP 404 for {url}", http_status=404) for url in urls})
        mark_page_failure = store.mark_page_failure
        calls = []

        async def flaky_mark_page_failure(tenant_id, url, http_status=None):
            calls.append(url)
            if len(calls) > 1:
                raise StoreError("database connection lost")
            await mark_page_failure(tenant_id, url, http_status)

        monkeypatch.setattr(store, "mark_page_failure", flaky_mark_page_failure)
        manager = make_manager(settings=IngestionSettings(crawl_concurrency=1),
                               crawler=FakeCrawler(urls), fetcher=fetcher)

        run_id = await manager.start_job("t1", "https://a.example", 5)
        run = await manager.wait(run_id, timeout=5)

        assert calls == urls[:2]
        assert run.status is RunStatus.FAILED
        assert run.error == "database connection lost"
        persisted = await store.get_run(run_id)
        assert persisted.status is RunStatus.FAILED
        assert persisted.error == "database connection lost"
        assert (await store.get_page("t1", urls[0])).http_status == 404

    @pytest.mark.asyncio
    async def test_embedding_failure_fails_only_that_page(self, make_manager, store, embedder, monkeypatch):
        urls = ["https://a.example/about", "https://a.example/pricing", "https://a.example/contact"]
        embed_batch = embedder.embed_batch

        async def rate_limited_on_pricing(texts):
            if any("pricing" in text for text in texts):
                raise EmbeddingError("Embedding request failed with status 429: rate limited",
                                     status=429, retryable=True)
            return await embed_batch(texts)

        monkeypatch.setattr(embedder, "embed_batch", rate_limited_on_pricing)
        manager = make_manager(settings=IngestionSettings(crawl_concurrency=1),
                               crawler=FakeCrawler(urls), fetcher=StaticFetcher())

        run_id = await manager.start_job("t1", "https://a.example", 5)
        run = await manager.wait(run_id, timeout=5)

        assert run.status is RunStatus.DONE
        assert run.pages_crawled == 3
        assert "status 429" in run.error

        pricing = await store.get_page("t1", urls[1])
        assert pricing.status is PageStatus.FAILED
        assert pricing.content_hash is None
        assert await store.count_chunks("t1", pricing.id) == 0

        for url in (urls[0], urls[2]):
            page = await store.get_page("t1", url)
            assert page.status is PageStatus.OK
            assert await store.count_chunks("t1", page.id) > 0
        assert run.chunks_written == await store.count_chunks("t1")
        assert (await store.get_run(run_id)).error == run.error

    @pytest.mark.asyncio
    async def test_zero_pages_is_done_and_logged(self, make_manager, caplog):
        manager = make_manager(crawler=FakeCrawler([]), fetcher=GatedFetcher())

        with caplog.at_level(logging.ERROR, logger="server.jobs"):
            run_id = await manager.start_job("t1", "https://a.example", 5)
            run = await manager.wait(run_id, timeout=5)

        assert run.status is RunStatus.DONE
        assert run.pages_crawled == 0
        assert any("0 pages crawled" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_resync_clears_previous_pages(self, make_manager, store):
        await store.upsert_page("t1", "https://a.example/old", "Old", "Old content")
        fetcher = GatedFetcher()
        fetcher.gate.set()
        manager = make_manager(crawler=FakeCrawler(["https://a.example/new"]), fetcher=fetcher)

        run_id = await manager.start_job("t1", "https://a.example", 5, is_resync=True)
        run = await manager.wait(run_id, timeout=5)

        assert run.status is RunStatus.DONE
        assert [p.url for p in await store.list_pages("t1")] == ["https://a.example/new"]
        assert run.chunks_written == await store.count_chunks("t1")

    @pytest.mark.asyncio
    async def test_site_with_missing_good_and_slow_pages(self, make_manager, store, embedder, serve_app):
        server = await serve_app(scenario_site())
        root = str(server.make_url("/"))
        manager = make_manager(settings=IngestionSettings(fetch_timeout=0.5, crawl_concurrency=3))

        run_id = await manager.start_job("tenant-a", root, 10)
        run = await manager.wait(run_id, timeout=20)

        assert run.status is RunStatus.DONE
        assert run.pages_found == 3
        assert run.pages_crawled == 3
        assert run.error is not None
        assert "404" in run.error or "Timed out" in run.error

        pages = {p.url.rsplit("/", 1)[-1]: p for p in await store.list_pages("tenant-a")}
        assert pages["good"].status is PageStatus.OK
        assert pages["good"].title == "Backups"
        assert pages["missing"].status is PageStatus.FAILED
        assert pages["missing"].http_status == 404
        assert pages["slow"].status is PageStatus.FAILED

        good_chunks = await store.count_chunks("tenant-a", pages["good"].id)
        assert good_chunks >= 1
        assert run.chunks_written == good_chunks

        persisted = await store.get_run(run_id)
        assert persisted.to_dict()["status"] == "done"
        assert persisted.pages_crawled == 3

        # Unchanged content is not embedded again
        batches_before = len(embedder.batches)
        second_id = await manager.start_job("tenant-a", root, 10)
        second = await manager.wait(second_id, timeout=20)

        assert second.status is RunStatus.DONE
        assert second.chunks_written == 0
        assert len(embedder.batches) == batches_before
        assert await store.count_chunks("tenant-a", pages["good"].id) == good_chunks
