"""parsers/base.py — Shared parser utilities, errors and the layer chunker."""

import logging
from collections.abc import Sequence

import config
from models import ContentLayer, ImageResource, UnifiedBook, UnifiedChapter

logger = logging.getLogger(__name__)


class BookParseError(ValueError):
    """The source container or its metadata is unusable; no book can be built."""


class ChapterNotFoundError(IndexError):
    """A chapter id outside the book's chapter range was requested."""


class ImageResolutionError(LookupError):
    """A single image reference could not be resolved or fetched."""


def get_chapter(book: UnifiedBook, chapter_id: int) -> UnifiedChapter:
    """Return ``book.chapters[chapter_id]``, refusing negative or out-of-range ids."""
    if not isinstance(chapter_id, int) or not 0 <= chapter_id < len(book.chapters):
        raise ChapterNotFoundError(
            f"Chapter {chapter_id} does not exist "
            f"('{book.title}' has {len(book.chapters)} chapters)"
        )
    return book.chapters[chapter_id]


def decode_text(data: bytes) -> str:
    """Decode raw bytes as UTF-8, then the legacy CJK encoding, then lossy UTF-8."""
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        pass
    try:
        text = data.decode(config.LEGACY_ENCODING)
        logger.debug("Decoded %d bytes as %s", len(data), config.LEGACY_ENCODING)
        return text
    except (UnicodeDecodeError, LookupError):
        logger.debug("Falling back to lossy UTF-8 for %d bytes", len(data))
        return data.decode("utf-8", errors="replace")


def chunk_paragraphs(
    paragraphs: Sequence[str],
    start_index: int = 0,
    image: ImageResource | None = None,
    max_length: int | None = None,
) -> tuple[list[ContentLayer], int]:
    """
    Pack paragraphs into ContentLayers of at most ``max_length`` characters.

    Paragraphs are never split, so a single paragraph longer than the limit gets
    a layer of its own. ``image`` trails the first layer. Returns the layers and
    the next free chapter-global index.
    """
    if max_length is None:
        max_length = config.MAX_LAYER_LENGTH

    if not paragraphs:
        if image is None:
            return [], start_index
        return [ContentLayer(paragraphs=[], start_index=start_index, image=image)], start_index + 1

    layers: list[ContentLayer] = []
    current: list[str] = []
    current_size = 0
    next_index = start_index

    def flush() -> None:
        nonlocal next_index
        layer = ContentLayer(
            paragraphs=current.copy(),
            start_index=next_index,
            image=image if not layers else None,
        )
        layers.append(layer)
        next_index = layer.end_index

    for para in paragraphs:
        if current and current_size + len(para) > max_length:
            flush()
            current = []
            current_size = 0
        current.append(para)
        current_size += len(para)

    if current:
        flush()

    return layers, next_index
