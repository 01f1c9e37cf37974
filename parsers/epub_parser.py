"""parsers/epub_parser.py — Parse packed EPUB books into chapter skeletons and layers."""

import io
import logging
import mimetypes
import posixpath
import re
import xml.etree.ElementTree as ET
import zipfile
import zlib
from dataclasses import dataclass, field
from pathlib import PurePath
from urllib.parse import unquote

from bs4 import BeautifulSoup

from models import BookFormat, ContentLayer, ImageResource, UnifiedBook, UnifiedChapter, release_layers
from parsers.base import BookParseError, ImageResolutionError, get_chapter
from parsers.tree import LayerBuilder, body_of, node_from_soup

logger = logging.getLogger(__name__)

CONTAINER_NS = "urn:oasis:names:tc:opendocument:xmlns:container"
NCX_NS = "http://www.daisy.org/z3986/2005/ncx/"
OPF_NS = "http://www.idpf.org/2007/opf"
DC_NS = "http://purl.org/dc/elements/1.1/"

NCX_MEDIA_TYPE = "application/x-dtbncx+xml"
_URL_SCHEME = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*:")

# What ZipFile.read raises on a corrupt, encrypted or oddly compressed member
ZIP_READ_ERRORS = (zipfile.BadZipFile, zlib.error, RuntimeError, NotImplementedError, OSError, EOFError)


class EpubContainer:
    """Read-only access to the files of a zipped EPUB held in memory."""

    def __init__(self, data: bytes):
        try:
            self._zip = zipfile.ZipFile(io.BytesIO(data))
        except zipfile.BadZipFile as e:
            raise BookParseError(f"Not a valid EPUB container: {e}") from e
        self._names = set(self._zip.namelist())

    def request(self, path: str) -> bytes | None:
        """Return the bytes stored at ``path``, or None if the archive has no such file."""
        key = path.lstrip("/")
        if key not in self._names:
            key = unquote(key)
            if key not in self._names:
                return None
        return self._zip.read(key)

    def close(self) -> None:
        self._zip.close()

    def __enter__(self) -> "EpubContainer":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


@dataclass
class ManifestItem:
    id: str
    path: str
    media_type: str
    properties: set[str] = field(default_factory=set)


@dataclass
class EpubPackage:
    opf_path: str
    title: str
    author: str
    manifest: dict[str, ManifestItem]
    spine: list[str]          # section paths in reading order
    linear_spine: list[str]
    toc_id: str | None = None
    cover_id: str | None = None

    @property
    def reading_order(self) -> list[str]:
        """Linear sections, or the whole spine when every itemref is linear="no"."""
        return self.linear_spine or self.spine

    def item_for_path(self, path: str) -> ManifestItem | None:
        for item in self.manifest.values():
            if item.path == path:
                return item
        return None


def _resolve(base_dir: str, href: str) -> str:
    path = unquote(href.split("#", 1)[0])
    return posixpath.normpath(posixpath.join(base_dir, path)) if base_dir else posixpath.normpath(path)


def _read_xml(container: EpubContainer, path: str) -> ET.Element:
    try:
        raw = container.request(path)
    except ZIP_READ_ERRORS as e:
        raise BookParseError(f"Cannot read {path}: {e}") from e
    if raw is None:
        raise BookParseError(f"EPUB is missing {path}")
    try:
        return ET.fromstring(raw)
    except ET.ParseError as e:
        raise BookParseError(f"Malformed XML in {path}: {e}") from e


def _text_of(root: ET.Element, tag: str) -> str:
    el = root.find(f".//{{{DC_NS}}}{tag}")
    return el.text.strip() if el is not None and el.text else ""


def read_package(container: EpubContainer) -> EpubPackage:
    """Locate and read the OPF package document: metadata, manifest and spine."""
    rootfile = _read_xml(container, "META-INF/container.xml").find(f".//{{{CONTAINER_NS}}}rootfile")
    if rootfile is None or not rootfile.get("full-path"):
        raise BookParseError("container.xml does not name a package document")
    opf_path = rootfile.get("full-path")
    opf = _read_xml(container, opf_path)
    opf_dir = posixpath.dirname(opf_path)

    manifest = {}
    for item in opf.findall(f".//{{{OPF_NS}}}manifest/{{{OPF_NS}}}item"):
        item_id, href = item.get("id", ""), item.get("href", "")
        if item_id and href:
            manifest[item_id] = ManifestItem(
                id=item_id,
                path=_resolve(opf_dir, href),
                media_type=item.get("media-type", ""),
                properties=set((item.get("properties") or "").split()),
            )

    spine_el = opf.find(f".//{{{OPF_NS}}}spine")
    spine, linear_spine = [], []
    if spine_el is not None:
        for itemref in spine_el.findall(f"{{{OPF_NS}}}itemref"):
            item = manifest.get(itemref.get("idref", ""))
            if item is None:
                logger.warning("Spine references unknown manifest id %r", itemref.get("idref"))
                continue
            spine.append(item.path)
            if itemref.get("linear", "yes") != "no":
                linear_spine.append(item.path)

    cover_id = None
    for meta in opf.findall(f".//{{{OPF_NS}}}meta"):
        if meta.get("name") == "cover" and meta.get("content"):
            cover_id = meta.get("content")
            break

    return EpubPackage(
        opf_path=opf_path,
        title=_text_of(opf, "title"),
        author=_text_of(opf, "creator"),
        manifest=manifest,
        spine=spine,
        linear_spine=linear_spine,
        toc_id=spine_el.get("toc") if spine_el is not None else None,
        cover_id=cover_id,
    )


def _find_cover_item(package: EpubPackage) -> ManifestItem | None:
    for item in package.manifest.values():
        if "cover-image" in item.properties:
            return item
    if package.cover_id in package.manifest:
        return package.manifest[package.cover_id]
    for item in package.manifest.values():
        if item.media_type.startswith("image/") and "cover" in (item.id + item.path).lower():
            return item
    return None


def _extract_cover(container: EpubContainer, package: EpubPackage) -> bytes | None:
    """Return the declared cover image, or None. Never fails the parse."""
    try:
        item = _find_cover_item(package)
        if item is None:
            return None
        data = container.request(item.path)
        if data is None:
            logger.warning("Cover image %s is missing from the archive", item.path)
        return data
    except Exception as e:
        logger.warning("Could not extract cover: %s", e)
        return None


def _nav_document_entries(container: EpubContainer, package: EpubPackage) -> list[tuple[str, str]]:
    """Top-level (label, path) entries of the EPUB3 navigation document."""
    nav_item = next((i for i in package.manifest.values() if "nav" in i.properties), None)
    if nav_item is None:
        return []
    try:
        raw = container.request(nav_item.path)
    except ZIP_READ_ERRORS as e:
        logger.warning("Cannot read navigation document %s: %s", nav_item.path, e)
        return []
    if raw is None:
        logger.warning("Navigation document %s is missing", nav_item.path)
        return []

    soup = BeautifulSoup(raw, features="lxml-xml")
    navs = soup.find_all("nav")
    toc = next((n for n in navs if "toc" in (n.get("epub:type") or n.get("type") or "")), None)
    if toc is None:
        toc = navs[0] if navs else None
    if toc is None:
        return []

    nav_dir = posixpath.dirname(nav_item.path)
    entries: list[tuple[str, str]] = []

    def walk(ol):
        for li in ol.find_all("li", recursive=False):
            link = li.find("a", recursive=False)
            if link is not None and link.get("href"):
                entries.append((link.get_text(" ", strip=True), _resolve(nav_dir, link["href"])))
                continue
            # Unlinked group heading: use its children instead
            nested = li.find("ol", recursive=False)
            if nested is not None:
                walk(nested)

    top = toc.find("ol")
    if top is not None:
        walk(top)
    return entries


def _ncx_entries(container: EpubContainer, package: EpubPackage) -> list[tuple[str, str]]:
    """Top-level (label, path) entries of toc.ncx."""
    ncx_item = package.manifest.get(package.toc_id or "")
    if ncx_item is None:
        ncx_item = next((i for i in package.manifest.values() if i.media_type == NCX_MEDIA_TYPE), None)
    if ncx_item is None:
        return []
    try:
        raw = container.request(ncx_item.path)
    except ZIP_READ_ERRORS as e:
        logger.warning("Cannot read NCX %s: %s", ncx_item.path, e)
        return []
    if raw is None:
        logger.warning("NCX %s is missing", ncx_item.path)
        return []
    try:
        root = ET.fromstring(raw)
    except ET.ParseError as e:
        logger.warning("Ignoring malformed NCX %s: %s", ncx_item.path, e)
        return []

    nav_map = root.find(f"{{{NCX_NS}}}navMap")
    if nav_map is None:
        return []

    ncx_dir = posixpath.dirname(ncx_item.path)
    entries: list[tuple[str, str]] = []

    def walk(parent):
        for np in parent.findall(f"{{{NCX_NS}}}navPoint"):
            label = np.find(f"{{{NCX_NS}}}navLabel/{{{NCX_NS}}}text")
            content = np.find(f"{{{NCX_NS}}}content")
            src = content.get("src", "") if content is not None else ""
            if src:
                title = label.text.strip() if label is not None and label.text else ""
                entries.append((title, _resolve(ncx_dir, src)))
            else:
                walk(np)

    walk(nav_map)
    return entries


def _build_chapters(container: EpubContainer, package: EpubPackage) -> list[UnifiedChapter]:
    entries = _nav_document_entries(container, package) or _ncx_entries(container, package)
    sections = set(package.spine)

    chapters: list[UnifiedChapter] = []
    for title, path in entries:
        if path not in sections:
            logger.warning("Skipping navigation entry %r: %s is not a spine section", title, path)
            continue
        chapters.append(UnifiedChapter(
            id=len(chapters),
            title=title or f"Chapter {len(chapters) + 1}",
            locator=path,
        ))

    if not chapters:
        logger.info("No usable navigation, falling back to %d spine sections", len(package.reading_order))
        chapters = [
            UnifiedChapter(id=i, title=f"Chapter {i + 1}")
            for i in range(len(package.reading_order))
        ]
    return chapters


def _title_from_filename(name: str) -> str:
    stem = PurePath(name).name
    return re.sub(r"\.epub$", "", stem, flags=re.IGNORECASE) or stem


def parse_epub(data: bytes, name: str) -> UnifiedBook:
    """Read metadata, cover and chapter skeletons. Chapter content is loaded later."""
    with EpubContainer(data) as container:
        package = read_package(container)
        if not package.spine:
            raise BookParseError(f"{name} has no readable sections")
        cover = _extract_cover(container, package)
        chapters = _build_chapters(container, package)

    title = package.title or _title_from_filename(name)
    author = package.author or "Unknown"
    logger.info("Parsed %s: '%s' by %s, %d chapters", name, title, author, len(chapters))

    return UnifiedBook(
        title=title,
        author=author,
        format=BookFormat.MARKUP,
        chapters=chapters,
        raw_source=bytes(data),
        cover=cover,
    )


def resolve_image_path(src: str, section_path: str) -> str:
    """
    Resolve an image reference against the path of the section that holds it.

    ``..`` drops a directory, ``.`` and empty segments are ignored and an
    absolute ``/path`` is returned as is. References with a URL scheme
    (http:, data:, ...) cannot be served from the archive.
    """
    src = src.split("#", 1)[0]
    if _URL_SCHEME.match(src):
        raise ImageResolutionError(f"external image {src!r} is not supported")
    if src.startswith("/"):
        return src

    parts = [p for p in posixpath.dirname(section_path).split("/") if p]
    for part in src.split("/"):
        if part == "..":
            if parts:
                parts.pop()
        elif part not in (".", ""):
            parts.append(part)
    return "/" + "/".join(parts)


def _image_resolver(container: EpubContainer, package: EpubPackage, section_path: str):
    def resolve(src: str) -> ImageResource:
        path = resolve_image_path(src, section_path)
        try:
            data = container.request(path)
        except ZIP_READ_ERRORS as e:
            raise ImageResolutionError(f"cannot read {path}: {e}") from e
        if data is None:
            raise ImageResolutionError(f"{path} is not in the archive")
        item = package.item_for_path(unquote(path.lstrip("/")))
        media_type = item.media_type if item else (mimetypes.guess_type(path)[0] or "")
        return ImageResource(data, media_type=media_type, path=path)
    return resolve


def _diagnostic(*lines: str) -> list[ContentLayer]:
    return [ContentLayer(paragraphs=list(lines), start_index=0)]


def load_epub_chapter(book: UnifiedBook, chapter_id: int) -> list[ContentLayer]:
    """
    Build the layers of one chapter from its XHTML section.

    A section that cannot be found, read or parsed yields a single layer
    describing the problem instead of an exception.
    """
    chapter = get_chapter(book, chapter_id)
    if chapter.is_loaded:
        return chapter.layers

    try:
        with EpubContainer(book.raw_source) as container:
            package = read_package(container)
            if chapter.locator:
                section_path = chapter.locator if chapter.locator in package.spine else None
            elif chapter_id < len(package.reading_order):
                section_path = package.reading_order[chapter_id]
            else:
                section_path = None

            raw = container.request(section_path) if section_path else None
            if raw is None:
                logger.error("Chapter %d (%s) has no section to load", chapter_id, chapter.title)
                return _diagnostic(f'Chapter "{chapter.title}" is missing or could not be found')

            body = body_of(BeautifulSoup(raw, features="lxml-xml"))
            if body is None:
                logger.error("Chapter %d (%s): %s has no content", chapter_id, chapter.title, section_path)
                return _diagnostic(f'Chapter "{chapter.title}" is empty')

            builder = LayerBuilder(_image_resolver(container, package, section_path))
            try:
                layers = builder.build(node_from_soup(body))
            except Exception:
                release_layers(builder.layers)
                raise
    except Exception as e:
        logger.error("Chapter %d (%s) failed to load: %s", chapter_id, chapter.title, e)
        return _diagnostic(f'Chapter "{chapter.title}" failed to load', f"Error: {e}")

    logger.debug(
        "Loaded chapter %d of %s: %d layers, %d images skipped",
        chapter_id, book.title, len(layers), builder.skipped_images,
    )
    return layers
