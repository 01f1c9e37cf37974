"""parsers/txt_parser.py — Split plain-text books into chapters on heading lines."""

import logging
import re
from pathlib import PurePath

from models import BookFormat, ContentLayer, UnifiedBook, UnifiedChapter
from parsers.base import chunk_paragraphs, decode_text, get_chapter

logger = logging.getLogger(__name__)

LEADING_CHAPTER_TITLE = "Front Matter"
WHOLE_BOOK_TITLE = "Full Text"
MAX_HEADING_LENGTH = 80

_NUMBER_WORD = (
    r"(?:(?:twenty|thirty|forty|fifty|sixty|seventy|eighty|ninety)"
    r"(?:-(?:one|two|three|four|five|six|seven|eight|nine))?"
    r"|one|two|three|four|five|six|seven|eight|nine|ten|eleven|twelve|thirteen"
    r"|fourteen|fifteen|sixteen|seventeen|eighteen|nineteen|hundred)"
)
# Upper case only, so words like "mix" or "did" are not read as numerals
_ROMAN = r"(?-i:(?=[MDCLXVI])M{0,3}(?:CM|CD|D?C{0,3})(?:XC|XL|L?X{0,3})(?:IX|IV|V?I{0,3}))"

CHAPTER_HEADING = re.compile(
    r"^(?:"
    r"第[一二三四五六七八九十百千万零〇两0-9０-９]+[章回节卷集部篇]"
    rf"|(?:chapter|section|volume|part)\s+(?:\d+|{_ROMAN}|{_NUMBER_WORD})(?!\w)"
    r").*$",
    re.IGNORECASE,
)


def is_heading(line: str) -> bool:
    """True for a stripped line that opens a new chapter."""
    return len(line) <= MAX_HEADING_LENGTH and CHAPTER_HEADING.match(line) is not None


def _title_from_filename(name: str) -> str:
    stem = PurePath(name).name
    return re.sub(r"\.txt$", "", stem, flags=re.IGNORECASE) or stem


def _split_chapters(lines: list[str]) -> list[UnifiedChapter]:
    """Build chapter skeletons; each locator is the (start, end) span of its body lines."""
    chapters: list[UnifiedChapter] = []
    starts: list[int] = []

    for i, raw in enumerate(lines):
        line = raw.strip()
        if not line:
            continue
        if is_heading(line):
            chapters.append(UnifiedChapter(id=len(chapters), title=line))
            starts.append(i + 1)
        elif not chapters:
            chapters.append(UnifiedChapter(id=0, title=LEADING_CHAPTER_TITLE))
            starts.append(0)

    if not chapters:
        return [UnifiedChapter(id=0, title=WHOLE_BOOK_TITLE, locator=(0, len(lines)))]

    if len(chapters) == 1 and chapters[0].title == LEADING_CHAPTER_TITLE:
        chapters[0].title = WHOLE_BOOK_TITLE

    for n, chapter in enumerate(chapters):
        # The next chapter's heading line closes this one
        end = starts[n + 1] - 1 if n + 1 < len(chapters) else len(lines)
        chapter.locator = (starts[n], end)
    return chapters


def _bounds_by_title(lines: list[str], book: UnifiedBook, chapter_id: int) -> tuple[int, int]:
    """Locate a chapter by exact heading-line equality (skeletons without a locator)."""
    title = book.chapters[chapter_id].title
    start, end = 0, len(lines)

    for i, line in enumerate(lines):
        if line.strip() == title:
            start = i + 1
            break

    if chapter_id + 1 < len(book.chapters):
        next_title = book.chapters[chapter_id + 1].title
        for i in range(start, len(lines)):
            if lines[i].strip() == next_title:
                end = i
                break
    return start, end


def parse_txt(data: bytes, name: str) -> UnifiedBook:
    """Parse a plain-text book into chapter skeletons; no chapter content is built."""
    text = decode_text(data)
    lines = text.split("\n")
    chapters = _split_chapters(lines)
    logger.info("Parsed %s: %d characters, %d chapters", name, len(text), len(chapters))

    return UnifiedBook(
        title=_title_from_filename(name),
        author="Unknown",
        format=BookFormat.PLAIN,
        chapters=chapters,
        raw_source=bytes(data),
    )


def load_txt_chapter(book: UnifiedBook, chapter_id: int) -> list[ContentLayer]:
    """Build the layers of one chapter, one paragraph per non-blank line."""
    chapter = get_chapter(book, chapter_id)
    if chapter.is_loaded:
        return chapter.layers

    lines = decode_text(book.raw_source).split("\n")
    if chapter.locator is not None:
        start, end = chapter.locator
    else:
        start, end = _bounds_by_title(lines, book, chapter_id)

    paragraphs = []
    for raw in lines[start:end]:
        line = raw.strip()
        if not line or is_heading(line):
            continue
        paragraphs.append(line)

    layers, _ = chunk_paragraphs(paragraphs, 0)
    logger.debug(
        "Loaded chapter %d of %s: %d paragraphs in %d layers",
        chapter_id, book.title, len(paragraphs), len(layers),
    )
    return layers
