"""
Page sources that produce content snapshots for the quiz controller.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Dict, Optional

from bs4 import BeautifulSoup
from bs4.element import Comment, Declaration, Doctype, NavigableString, ProcessingInstruction, Tag

from .exceptions import ContentExtractionError
from .models import ContentNode, PageSnapshot


logger = logging.getLogger(__name__)

_SKIPPED_STRINGS = (Comment, Declaration, Doctype, ProcessingInstruction)


class PageSource(ABC):
    """Collaborator that returns a snapshot of the visible page content."""

    @abstractmethod
    async def get_visible_content_tree(self) -> PageSnapshot:
        """Return the current page snapshot."""


def _attributes(tag: Tag) -> Dict[str, str]:
    attrs = {}
    for name, value in tag.attrs.items():
        # bs4 returns multi-valued attributes such as class as lists
        if isinstance(value, (list, tuple)):
            value = ' '.join(value)
        attrs[name.lower()] = value if value is not None else ""
    return attrs


def _convert(tag: Tag) -> ContentNode:
    children = []
    for child in tag.children:
        if isinstance(child, Tag):
            children.append(_convert(child))
        elif isinstance(child, NavigableString) and not isinstance(child, _SKIPPED_STRINGS):
            if str(child):
                children.append(ContentNode(tag='#text', text=str(child)))
    return ContentNode(tag=tag.name.lower(), attributes=_attributes(tag), children=tuple(children))


def snapshot_from_html(html: str) -> PageSnapshot:
    """
    Build a page snapshot from static HTML.

    Layout is unknown for static markup, so element sizes are left unset.
    The snapshot root is the ``<body>`` element when present.
    """
    soup = BeautifulSoup(html, 'html.parser')
    title = soup.title.get_text(strip=True) if soup.title else ""

    if soup.body is not None:
        root = _convert(soup.body)
    else:
        # Fragment without <body>: treat the whole document as the body
        if soup.head is not None:
            soup.head.decompose()
        for tag in soup.find_all('title'):
            tag.decompose()
        root = replace(_convert(soup), tag='body')

    return PageSnapshot(root=root, title=title)


class HtmlPageSource(PageSource):
    """Page source backed by an HTML document held in memory."""

    def __init__(self, html: Optional[str]):
        self.html = html
        self.logger = logging.getLogger(__name__)

    async def get_visible_content_tree(self) -> PageSnapshot:
        if not self.html or not self.html.strip():
            raise ContentExtractionError("Failed to extract text from page")
        try:
            return snapshot_from_html(self.html)
        except Exception as e:
            self.logger.error(f"Failed to parse page HTML: {e}")
            raise ContentExtractionError("Failed to extract text from page") from e
