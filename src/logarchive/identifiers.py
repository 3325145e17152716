"""
Identifier cache: md5(host + path) -> entity, shared by every partition of a run.

Loaded once from the identifier-map table. New resolutions are buffered and
written back in groups of flush_size with upsert semantics, so flushing the
same entries twice is harmless.
"""

import asyncio
import logging
from typing import Dict, Optional

from core.errors.exceptions import PipelineError
from core.logging.utilities import log_exception
from logarchive.models import EntityRef, IdentifierCacheEntry
from logarchive.state import StateStore

logger = logging.getLogger(__name__)


class IdentifierCache:
    """
    Explicitly owned identifier cache.

    Reads are lock-free; adds and flushes are serialised by one asyncio.Lock.
    Pending entries stay buffered when a flush fails and go out with the
    next flush.
    """

    def __init__(self, store: StateStore, flush_size: int = 500):
        self.store = store
        self.flush_size = flush_size
        self._entries: Dict[str, IdentifierCacheEntry] = {}
        self._pending: Dict[str, IdentifierCacheEntry] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def load(self) -> int:
        entries = await self.store.async_load_identifiers()
        async with self._lock:
            self._entries.update(entries)
        logger.info(
            "Loaded %d identifiers",
            len(entries),
            extra={"cache_size": len(self._entries)},
        )
        return len(entries)

    def get(self, content_hash: str) -> Optional[EntityRef]:
        entry = self._entries.get(content_hash)
        return entry.entity if entry is not None else None

    async def add(self, entry: IdentifierCacheEntry) -> None:
        """Cache a new resolution; flushes when the buffer reaches flush_size."""
        async with self._lock:
            if entry.content_hash in self._entries:
                return
            self._entries[entry.content_hash] = entry
            self._pending[entry.content_hash] = entry
            if len(self._pending) < self.flush_size:
                return
            try:
                await self._flush_locked()
            except PipelineError as e:
                log_exception(
                    logger,
                    e,
                    "Identifier flush failed; entries kept for next flush",
                    level=logging.WARNING,
                    include_traceback=False,
                    cache_size=len(self._pending),
                )

    async def flush(self) -> int:
        """Write all pending entries. Raises on failure, keeping them pending."""
        async with self._lock:
            return await self._flush_locked()

    async def _flush_locked(self) -> int:
        if not self._pending:
            return 0
        rows = list(self._pending.values())
        written = await self.store.async_upsert_identifiers(rows)
        for row in rows:
            self._pending.pop(row.content_hash, None)
        logger.debug(
            "Flushed %d identifiers",
            written,
            extra={"rows_flushed": written, "cache_size": len(self._entries)},
        )
        return written
