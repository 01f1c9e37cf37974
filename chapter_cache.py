"""chapter_cache.py — Sliding-window chapter cache with background read-ahead.

Keeps the current chapter plus its neighbours in memory and evicts the least
recently used chapter once more than ``capacity`` are resident. Evicted
chapters give back their image resources immediately.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

import config
import parsers
from models import ContentLayer, UnifiedBook, release_layers
from parsers.base import get_chapter

logger = logging.getLogger(__name__)

PREFETCH_BEHIND = 1
PREFETCH_AHEAD = 2


@dataclass
class CacheEntry:
    chapter_id: int
    layers: list[ContentLayer]
    last_access: float


@dataclass(frozen=True)
class CacheStats:
    size: int
    max_size: int
    cached_chapters: tuple[int, ...]


class ChapterCache:
    """
    LRU cache of chapter layers for one open book.

    ``get_chapter`` is the read path. A miss loads the chapter through the
    book's adapter in a worker thread, then schedules a low-priority task that
    prefetches the chapter before and the two after it.
    """

    def __init__(
        self,
        book: UnifiedBook,
        capacity: int | None = None,
        prefetch_delay: float | None = None,
        prefetch_window: tuple[int, int] = (PREFETCH_BEHIND, PREFETCH_AHEAD),
        clock: Callable[[], float] = time.monotonic,
        loader: Callable[[UnifiedBook, int], list[ContentLayer]] | None = None,
    ):
        self.book = book
        self.capacity = capacity if capacity is not None else config.CACHE_CAPACITY
        if self.capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.prefetch_delay = prefetch_delay if prefetch_delay is not None else config.PREFETCH_DELAY
        self.prefetch_window = prefetch_window
        self._clock = clock
        self._loader = loader or parsers.load_chapter
        self._entries: dict[int, CacheEntry] = {}
        self._loading: dict[int, asyncio.Task] = {}
        self._prefetching: set[int] = set()
        self._prefetch_tasks: set[asyncio.Task] = set()
        self._generation = 0

    def __contains__(self, chapter_id: int) -> bool:
        return chapter_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def pending_prefetch(self) -> set[int]:
        """Chapter ids queued or running in a prefetch batch."""
        return set(self._prefetching)

    async def get_chapter(self, chapter_id: int) -> list[ContentLayer]:
        """Return a chapter's layers, loading it on a miss. Adapter errors propagate."""
        get_chapter(self.book, chapter_id)
        layers = await self._get(chapter_id)
        self._schedule_prefetch(chapter_id)
        return layers

    async def _get(self, chapter_id: int) -> list[ContentLayer]:
        entry = self._entries.pop(chapter_id, None)
        if entry is not None:
            # Re-insert so dict order tracks recency for equal timestamps
            self._entries[chapter_id] = entry
            entry.last_access = self._clock()
            logger.debug("Cache hit for chapter %d", chapter_id)
            return entry.layers

        # A chapter being loaded already (e.g. by prefetch) is awaited, not reloaded
        task = self._loading.get(chapter_id)
        if task is None:
            task = asyncio.create_task(self._load(chapter_id, self._generation))
            self._loading[chapter_id] = task
        return await asyncio.shield(task)

    async def _load(self, chapter_id: int, generation: int) -> list[ContentLayer]:
        logger.debug("Loading chapter %d of %s", chapter_id, self.book.title)
        try:
            layers = await asyncio.to_thread(self._loader, self.book, chapter_id)
        finally:
            if self._loading.get(chapter_id) is asyncio.current_task():
                del self._loading[chapter_id]

        if generation != self._generation:
            logger.debug("Discarding chapter %d loaded before the cache was cleared", chapter_id)
            release_layers(layers)
            return layers

        self._entries[chapter_id] = CacheEntry(chapter_id, layers, self._clock())
        chapter = self.book.chapters[chapter_id]
        chapter.layers = layers
        chapter.is_loaded = True
        self._evict_if_needed()
        return layers

    def _evict_if_needed(self) -> None:
        while len(self._entries) > self.capacity:
            # min() keeps the first of equal timestamps, i.e. the least recently touched
            victim = min(self._entries.values(), key=lambda e: e.last_access)
            self._evict(victim)

    def _evict(self, entry: CacheEntry) -> None:
        del self._entries[entry.chapter_id]
        chapter = self.book.chapters[entry.chapter_id]
        chapter.layers = []
        chapter.is_loaded = False
        freed = release_layers(entry.layers)
        logger.debug("Evicted chapter %d, released %d images", entry.chapter_id, freed)

    def prefetch_targets(self, chapter_id: int) -> list[int]:
        """Neighbours of ``chapter_id`` that are neither resident nor already on their way."""
        behind, ahead = self.prefetch_window
        window = list(range(chapter_id - behind, chapter_id)) + list(
            range(chapter_id + 1, chapter_id + ahead + 1)
        )
        return [
            i for i in window
            if 0 <= i < len(self.book.chapters)
            and i not in self._entries
            and i not in self._loading
            and i not in self._prefetching
        ]

    def _schedule_prefetch(self, chapter_id: int) -> None:
        targets = self.prefetch_targets(chapter_id)
        if not targets:
            return
        self._prefetching.update(targets)
        task = asyncio.create_task(self._prefetch(targets, self._generation))
        self._prefetch_tasks.add(task)
        task.add_done_callback(self._prefetch_tasks.discard)
        logger.debug("Scheduled prefetch of chapters %s", targets)

    async def _prefetch(self, chapter_ids: list[int], generation: int) -> None:
        await asyncio.sleep(self.prefetch_delay)
        for chapter_id in chapter_ids:
            if generation != self._generation:
                return
            try:
                if chapter_id not in self._entries:
                    logger.debug("Prefetching chapter %d", chapter_id)
                    await self._get(chapter_id)
            except Exception as e:
                logger.warning("Prefetch of chapter %d failed: %s", chapter_id, e)
            finally:
                if generation == self._generation:
                    self._prefetching.discard(chapter_id)
            # Let foreground requests run between prefetched chapters
            await asyncio.sleep(0)

    async def wait_for_prefetch(self) -> None:
        """Wait until every scheduled prefetch batch has finished."""
        while self._prefetch_tasks:
            await asyncio.gather(*list(self._prefetch_tasks), return_exceptions=True)

    def clear(self) -> None:
        """Release every resident chapter and forget pending work."""
        freed = 0
        for entry in self._entries.values():
            freed += release_layers(entry.layers)
            chapter = self.book.chapters[entry.chapter_id]
            chapter.layers = []
            chapter.is_loaded = False
        logger.debug("Cleared %d chapters, released %d images", len(self._entries), freed)
        self._entries.clear()
        self._loading.clear()
        self._prefetching.clear()
        self._generation += 1

    def stats(self) -> CacheStats:
        return CacheStats(
            size=len(self._entries),
            max_size=self.capacity,
            cached_chapters=tuple(self._entries),
        )
