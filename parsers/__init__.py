"""parsers/ — Format adapters turning raw book bytes into UnifiedBooks and ContentLayers."""

from pathlib import Path, PurePath

from models import BookFormat, ContentLayer, UnifiedBook
from parsers.base import BookParseError, ChapterNotFoundError, ImageResolutionError
from parsers.epub_parser import load_epub_chapter, parse_epub
from parsers.txt_parser import load_txt_chapter, parse_txt

SUPPORTED_EXTENSIONS = {".epub", ".txt"}

__all__ = [
    "SUPPORTED_EXTENSIONS",
    "BookParseError",
    "ChapterNotFoundError",
    "ImageResolutionError",
    "load_chapter",
    "parse_book",
    "parse_file",
]


def parse_book(data: bytes, name: str) -> UnifiedBook:
    """Dispatch to the appropriate adapter based on the file name's extension."""
    suffix = PurePath(name).suffix.lower()

    if suffix == ".epub":
        return parse_epub(data, name)
    elif suffix == ".txt":
        return parse_txt(data, name)
    else:
        raise ValueError(
            f"Unsupported file format: '{suffix}'. "
            f"Supported: {', '.join(sorted(SUPPORTED_EXTENSIONS))}"
        )


def parse_file(file_path: Path) -> UnifiedBook:
    file_path = Path(file_path)
    return parse_book(file_path.read_bytes(), file_path.name)


def load_chapter(book: UnifiedBook, chapter_id: int) -> list[ContentLayer]:
    """Load one chapter's layers with the adapter that parsed the book."""
    if book.format == BookFormat.PLAIN:
        return load_txt_chapter(book, chapter_id)
    return load_epub_chapter(book, chapter_id)
