"""models.py — Shared data types for scrollbook."""

import itertools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

_handle_ids = itertools.count(1)


class BookFormat(str, Enum):
    PLAIN = "txt"
    MARKUP = "epub"


class ImageResource:
    """An image pulled out of a book, held in memory until released.

    Released exactly once, by cache eviction or ``ChapterCache.clear()``.
    """

    def __init__(self, data: bytes, media_type: str = "", path: str = ""):
        self.handle_id = next(_handle_ids)
        self.media_type = media_type
        self.path = path
        self._data: bytes | None = data
        self._size = len(data)

    @property
    def data(self) -> bytes:
        if self._data is None:
            raise RuntimeError(f"Image {self.path or self.handle_id} has been released")
        return self._data

    @property
    def size(self) -> int:
        return self._size

    @property
    def released(self) -> bool:
        return self._data is None

    def release(self) -> bool:
        """Drop the image data. Returns False if it was already released."""
        if self._data is None:
            return False
        self._data = None
        return True

    def __repr__(self) -> str:
        state = "released" if self.released else f"{self._size} bytes"
        return f"ImageResource(#{self.handle_id} {self.path!r}, {state})"


@dataclass
class ContentLayer:
    paragraphs: list[str]
    start_index: int = 0              # chapter-global index of paragraphs[0]
    image: ImageResource | None = None  # trails the paragraphs

    @property
    def end_index(self) -> int:
        """Next free chapter-global index after this layer."""
        return self.start_index + len(self.paragraphs) + (1 if self.image else 0)

    @property
    def text_length(self) -> int:
        return sum(len(p) for p in self.paragraphs)


@dataclass
class UnifiedChapter:
    id: int
    title: str
    layers: list[ContentLayer] = field(default_factory=list)
    is_loaded: bool = False
    locator: Any = None  # section path (epub) or (start, end) line span (txt)


@dataclass
class UnifiedBook:
    title: str
    author: str
    format: BookFormat
    chapters: list[UnifiedChapter]
    raw_source: bytes
    cover: bytes | None = None
    id: int | None = None
    added_at: float = field(default_factory=time.time)


def release_layers(layers: list[ContentLayer]) -> int:
    """Release every image owned by ``layers``; returns how many were freed."""
    released = 0
    for layer in layers:
        if layer.image is not None and layer.image.release():
            released += 1
    return released
