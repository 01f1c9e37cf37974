"""parsers/tree.py — Turn a markup tree into ContentLayers, cutting at every image.

The walk runs over plain ``Node`` objects, so it works the same whether the
tree came from BeautifulSoup or was built by hand.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from bs4 import BeautifulSoup, NavigableString, Tag
from bs4.element import PreformattedString

from models import ContentLayer, ImageResource
from parsers.base import ImageResolutionError, chunk_paragraphs

logger = logging.getLogger(__name__)

TEXT = "#text"
PARAGRAPH_TAGS = {"p", "h1", "h2", "h3", "h4", "h5", "h6"}
IMAGE_TAGS = {"img", "image"}
SKIPPED_TAGS = {"script", "style", "head", "title"}
BLOCK_TAGS = PARAGRAPH_TAGS | {
    "address", "article", "aside", "blockquote", "body", "dd", "div", "dl", "dt",
    "figcaption", "figure", "footer", "header", "hr", "li", "main", "nav", "ol",
    "pre", "section", "table", "tbody", "td", "tfoot", "th", "thead", "tr", "ul",
}


@dataclass
class Node:
    kind: str                                  # lower-case tag name, or "#text"
    attributes: dict[str, str] = field(default_factory=dict)
    text: str = ""                             # full text content
    children: list["Node"] = field(default_factory=list)

    @classmethod
    def text_node(cls, text: str) -> "Node":
        return cls(kind=TEXT, text=text)

    @classmethod
    def element(cls, kind: str, *children: "Node", **attributes: str) -> "Node":
        """Build an element whose text is the concatenation of its children's."""
        return cls(
            kind=kind.lower(),
            attributes=dict(attributes),
            text="".join(c.text for c in children),
            children=list(children),
        )

    def contains(self, kinds: Iterable[str]) -> bool:
        """True if any descendant (not self) has one of ``kinds``."""
        kinds = set(kinds)
        stack = list(self.children)
        while stack:
            node = stack.pop()
            if node.kind in kinds:
                return True
            stack.extend(node.children)
        return False


def _local_name(tag: Tag) -> str:
    return (tag.name or "").lower().rpartition(":")[2]


def node_from_soup(element: Tag) -> Node:
    """Convert a BeautifulSoup tag (and everything below it) into a Node tree."""
    children = []
    for child in element.children:
        if isinstance(child, Tag):
            name = _local_name(child)
            if name in SKIPPED_TAGS:
                continue
            if name == "br":
                children.append(Node.text_node("\n"))
                continue
            children.append(node_from_soup(child))
        elif isinstance(child, NavigableString) and not isinstance(child, PreformattedString):
            children.append(Node.text_node(str(child)))

    return Node(
        kind=_local_name(element),
        attributes={k: " ".join(v) if isinstance(v, list) else v for k, v in element.attrs.items()},
        text="".join(c.text for c in children),
        children=children,
    )


def body_of(soup: BeautifulSoup) -> Tag | None:
    """The element whose children make up the readable content of a section."""
    body = soup.find("body")
    if body is not None:
        return body
    for child in soup.children:
        if isinstance(child, Tag):
            return child
    return None


def image_source(node: Node) -> str:
    for key in ("src", "href", "xlink:href"):
        value = node.attributes.get(key, "").strip()
        if value:
            return value
    return ""


def _is_inline(node: Node) -> bool:
    if node.kind == TEXT:
        return True
    if node.kind in BLOCK_TAGS or node.kind in IMAGE_TAGS or node.kind in SKIPPED_TAGS:
        return False
    return not node.contains(BLOCK_TAGS | IMAGE_TAGS)


class LayerBuilder:
    """
    Depth-first walk that accumulates paragraphs until an image cuts them off.

    ``resolve_image`` turns an image reference into an ImageResource, raising
    ImageResolutionError when it cannot. ``next_index`` always holds the
    chapter-global index of the next paragraph or image.
    """

    def __init__(
        self,
        resolve_image: Callable[[str], ImageResource],
        max_length: int | None = None,
    ):
        self.resolve_image = resolve_image
        self.max_length = max_length
        self.layers: list[ContentLayer] = []
        self.pending: list[str] = []
        self.next_index = 0
        self.skipped_images = 0

    def build(self, root: Node) -> list[ContentLayer]:
        self._visit_children(root)
        self._flush()
        return self.layers

    def _visit(self, node: Node) -> None:
        kind = node.kind
        if kind == TEXT:
            self._add_text(node.text)
        elif kind in IMAGE_TAGS:
            self._add_image(node)
        elif kind in SKIPPED_TAGS:
            return
        elif kind in PARAGRAPH_TAGS and not node.contains(IMAGE_TAGS):
            self._add_text(node.text)
        elif kind not in PARAGRAPH_TAGS and not node.contains(BLOCK_TAGS | IMAGE_TAGS):
            # Inline-only container: keep its text together as one paragraph
            self._add_text(node.text)
        else:
            self._visit_children(node)

    def _visit_children(self, node: Node) -> None:
        # Text and inline elements between blocks or images form one paragraph
        run: list[str] = []
        for child in node.children:
            if _is_inline(child):
                run.append(child.text)
                continue
            self._add_text("".join(run))
            run = []
            self._visit(child)
        self._add_text("".join(run))

    def _add_text(self, text: str) -> None:
        text = text.strip()
        if text:
            self.pending.append(text)

    def _add_image(self, node: Node) -> None:
        src = image_source(node)
        if not src:
            return
        try:
            image = self.resolve_image(src)
        except ImageResolutionError as e:
            # Pending paragraphs stay pending and join the next layer
            self.skipped_images += 1
            logger.warning("Skipping image %r: %s", src, e)
            return
        self._flush(image)

    def _flush(self, image: ImageResource | None = None) -> None:
        layers, self.next_index = chunk_paragraphs(
            self.pending, self.next_index, image, self.max_length
        )
        self.layers.extend(layers)
        self.pending = []


def build_layers(
    root: Node,
    resolve_image: Callable[[str], ImageResource],
    max_length: int | None = None,
) -> list[ContentLayer]:
    return LayerBuilder(resolve_image, max_length).build(root)
