"""Semantic retrieval over a tenant's knowledge base."""

import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 8
MAX_TOP_K = 10


@dataclass
class RetrievedChunk:
    chunk_text: str
    source_url: str
    similarity: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Retriever:
    """Embeds a query and returns the tenant's most similar chunks."""

    def __init__(self, embedder, store):
        self.embedder = embedder
        self.store = store

    async def retrieve(self, tenant_id: str, query_text: str,
                       top_k: int = DEFAULT_TOP_K) -> List[RetrievedChunk]:
        limit = max(1, min(top_k if top_k is not None else DEFAULT_TOP_K, MAX_TOP_K))
        if not query_text or not query_text.strip():
            return []

        embedding = await self.embedder.embed(query_text)
        if not embedding:
            return []

        matches = await self.store.match_chunks(tenant_id, embedding, limit)
        logger.debug(f"Retrieved {len(matches)} chunks for tenant {tenant_id}")
        return [
            RetrievedChunk(chunk_text=m.chunk_text, source_url=m.url, similarity=m.similarity)
            for m in matches
        ]
