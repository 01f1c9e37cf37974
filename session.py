"""session.py — The active book, its chapter cache and the reader's position."""

import logging

from chapter_cache import ChapterCache
from models import ContentLayer, UnifiedBook, UnifiedChapter
from parsers.base import ChapterNotFoundError, get_chapter

logger = logging.getLogger(__name__)


class ReadingSession:
    """One reader moving through one book at a time."""

    def __init__(self, cache_factory=ChapterCache):
        self._cache_factory = cache_factory
        self.book: UnifiedBook | None = None
        self.cache: ChapterCache | None = None
        self.current_chapter_id = 0
        self.current_layers: list[ContentLayer] = []

    def open(self, book: UnifiedBook) -> None:
        """Make ``book`` the active book, dropping everything cached for the previous one."""
        self.close()
        logger.info("Opening '%s' (%d chapters)", book.title, len(book.chapters))
        self.book = book
        self.cache = self._cache_factory(book)
        self.current_chapter_id = 0
        self.current_layers = []

    def close(self) -> None:
        if self.cache is not None:
            self.cache.clear()
        self.book = None
        self.cache = None
        self.current_layers = []

    def _require_book(self) -> UnifiedBook:
        if self.book is None or self.cache is None:
            raise RuntimeError("No book is open")
        return self.book

    @property
    def current_chapter(self) -> UnifiedChapter | None:
        if self.book is None:
            return None
        return self.book.chapters[self.current_chapter_id]

    @property
    def has_prev(self) -> bool:
        return self.book is not None and self.current_chapter_id > 0

    @property
    def has_next(self) -> bool:
        return self.book is not None and self.current_chapter_id < len(self.book.chapters) - 1

    @property
    def progress_percentage(self) -> int:
        if self.book is None or not self.book.chapters:
            return 0
        return round(self.current_chapter_id / len(self.book.chapters) * 100)

    async def goto_chapter(self, chapter_id: int) -> list[ContentLayer]:
        book = self._require_book()
        get_chapter(book, chapter_id)
        layers = await self.cache.get_chapter(chapter_id)
        self.current_chapter_id = chapter_id
        self.current_layers = layers
        return layers

    async def next_chapter(self) -> list[ContentLayer]:
        self._require_book()
        if not self.has_next:
            raise ChapterNotFoundError("Already at the last chapter")
        return await self.goto_chapter(self.current_chapter_id + 1)

    async def prev_chapter(self) -> list[ContentLayer]:
        self._require_book()
        if not self.has_prev:
            raise ChapterNotFoundError("Already at the first chapter")
        return await self.goto_chapter(self.current_chapter_id - 1)
