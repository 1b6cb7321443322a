import os
import sys
from typing import List

import pytest
from aiohttp.test_utils import TestServer

# Add the project root to the path so tests import the flat packages directly
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from indexer.sqlite_adapter import SQLiteAdapter


class FakeEmbedder:
    """Deterministic letter-frequency vectors; similar words get similar vectors."""

    def __init__(self):
        self.batches: List[List[str]] = []
        self.closed = False

    @staticmethod
    def vector(text: str) -> List[float]:
        counts = [0.0] * 26
        for ch in text.lower():
            if 'a' <= ch <= 'z':
                counts[ord(ch) - ord('a')] += 1.0
        if not any(counts):
            counts[0] = 1.0
        return counts

    async def embed(self, text: str) -> List[float]:
        return self.vector(text)

    async def embed_batch(self, texts) -> List[List[float]]:
        self.batches.append(list(texts))
        return [self.vector(text) for text in texts]

    async def close(self):
        self.closed = True


@pytest.fixture
async def store(tmp_path):
    adapter = SQLiteAdapter(str(tmp_path / "sitefoundry-test.db"))
    await adapter.initialize()
    yield adapter
    await adapter.close()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
async def serve_app():
    """Start aiohttp applications on a local port; all are closed after the test."""
    servers = []

    async def _serve(app) -> TestServer:
        server = TestServer(app)
        await server.start_server()
        servers.append(server)
        return server

    yield _serve

    for server in servers:
        await server.close()
