"""
Main-content selection and cleanup for page snapshots.

Picks the most text-dense content region of a page, strips navigation and
other boilerplate, and returns normalized text ready to be quizzed on.
"""
import logging
import re
from dataclasses import replace
from typing import Callable, Iterator, List, Optional, Tuple

from .models import ContentNode, ExtractedContent, PageSnapshot


logger = logging.getLogger(__name__)

# Candidate content regions, highest priority first
CONTENT_SELECTORS = [
    'article',
    'main',
    '[role=main]',
    '.content',
    '.post',
    '.article',
    '.entry-content',
    '.post-content',
    '.article-content',
]

NOISE_TAGS = frozenset([
    'nav', 'header', 'footer', 'aside',
    'iframe', 'script', 'style', 'noscript', 'svg',
    'embed', 'object',
])

NOISE_CLASS_PATTERN = re.compile(
    r'\b(ad|ads|advertisement|banner|sidebar|widget|nav|menu|footer|header|'
    r'cookie|consent|popup|modal|social|share|comment)\b',
    re.IGNORECASE,
)

BLOCK_TAGS = frozenset([
    'address', 'article', 'aside', 'blockquote', 'body', 'dd', 'details', 'div',
    'dl', 'dt', 'fieldset', 'figcaption', 'figure', 'footer', 'form',
    'h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'header', 'hr', 'html', 'li', 'main',
    'nav', 'ol', 'p', 'pre', 'section', 'summary', 'table', 'td', 'th', 'tr', 'ul',
])

MIN_CANDIDATE_SIZE = 50
MIN_LINE_LENGTH = 20

_WHITESPACE = re.compile(r'\s+')

NodePredicate = Callable[[ContentNode], bool]


def matches_selector(node: ContentNode, selector: str) -> bool:
    """Check a node against a tag, ``.class`` or ``[attr=value]`` selector."""
    if node.is_text:
        return False
    if selector.startswith('.'):
        return selector[1:] in node.get('class').split()
    if selector.startswith('[') and selector.endswith(']'):
        name, _, value = selector[1:-1].partition('=')
        return node.get(name.strip()) == value.strip().strip('"\'')
    return node.tag == selector


def iter_elements(node: ContentNode) -> Iterator[ContentNode]:
    """Yield every element in the tree in document order."""
    if node.is_text:
        return
    yield node
    for child in node.children:
        yield from iter_elements(child)


def render_text(node: ContentNode) -> str:
    """Approximate rendered text, putting block-level elements on their own lines."""
    parts: List[str] = []
    _render_into(node, parts)
    return ''.join(parts)


def _render_into(node: ContentNode, parts: List[str]) -> None:
    if node.is_text:
        parts.append(_WHITESPACE.sub(' ', node.text))
        return
    if node.tag == 'br':
        parts.append('\n')
        return
    is_block = node.tag in BLOCK_TAGS
    if is_block:
        parts.append('\n')
    for child in node.children:
        _render_into(child, parts)
    if is_block:
        parts.append('\n')


def normalize_text(raw_text: str) -> str:
    """Collapse whitespace per line and drop lines too short to be prose."""
    lines = (_WHITESPACE.sub(' ', line).strip() for line in raw_text.split('\n'))
    return '\n'.join(line for line in lines if len(line) >= MIN_LINE_LENGTH)


def count_words(text: str) -> int:
    return len(text.split())


def prune(node: ContentNode, predicate: NodePredicate) -> ContentNode:
    """
    Return a copy of ``node`` without descendant elements matching ``predicate``.

    The node itself is always kept; only its subtree is filtered.
    """
    kept = tuple(
        child if child.is_text else prune(child, predicate)
        for child in node.children
        if child.is_text or not predicate(child)
    )
    return replace(node, children=kept)


def is_noise_element(node: ContentNode) -> bool:
    if node.tag in NOISE_TAGS:
        return True
    class_and_id = f"{node.get('class')} {node.get('id')}"
    return NOISE_CLASS_PATTERN.search(class_and_id) is not None


def is_marked_hidden(node: ContentNode) -> bool:
    """Hidden through inline style or hidden attributes (no computed style needed)."""
    style = node.get('style').replace(' ', '').lower()
    if 'display:none' in style or 'visibility:hidden' in style:
        return True
    if 'hidden' in node.attributes:
        return True
    return node.get('aria-hidden').lower() == 'true'


def is_hidden_or_tiny(node: ContentNode) -> bool:
    if node.computed_hidden:
        return True
    if node.width is not None and node.width < MIN_CANDIDATE_SIZE:
        return True
    if node.height is not None and node.height < MIN_CANDIDATE_SIZE:
        return True
    return False


def score_element(node: ContentNode) -> float:
    """Density heuristic: visible text length per direct child element."""
    text_length = len(render_text(node).strip())
    child_count = len(node.element_children) or 1
    return text_length / child_count


class ContentSelector:
    """Selects and cleans the main content region of a page snapshot."""

    def __init__(self, selectors: Optional[List[str]] = None):
        self.selectors = list(selectors) if selectors is not None else list(CONTENT_SELECTORS)
        self.logger = logging.getLogger(__name__)

    def find_content_container(self, root: ContentNode) -> Tuple[ContentNode, float]:
        """
        Find the highest-scoring visible candidate region.

        Returns:
            Tuple of (container, score); falls back to ``root`` with score 0
        """
        best: Optional[ContentNode] = None
        best_score = 0.0

        for selector in self.selectors:
            for element in iter_elements(root):
                if not matches_selector(element, selector):
                    continue
                if is_hidden_or_tiny(element):
                    continue
                score = score_element(element)
                if score > best_score:
                    best, best_score = element, score

        if best is None:
            self.logger.debug("No content candidate qualified, falling back to page body")
            return root, 0.0
        return best, best_score

    def clean(self, container: ContentNode) -> ContentNode:
        """Strip noise subtrees, then anything hidden by inline markers."""
        without_noise = prune(container, is_noise_element)
        return prune(without_noise, is_marked_hidden)

    def select(self, snapshot: PageSnapshot) -> ExtractedContent:
        """
        Extract the cleaned main text of a page.

        Args:
            snapshot: Visible content tree of the page

        Returns:
            ExtractedContent with normalized text, word count and title
        """
        container, score = self.find_content_container(snapshot.root)
        cleaned = self.clean(container)
        text = normalize_text(render_text(cleaned))
        word_count = count_words(text)

        self.logger.info(
            f"Selected <{container.tag}> content region with score {score:.1f}: {word_count} words",
            extra={
                'event_type': 'content_selected',
                'container_tag': container.tag,
                'score': score,
                'word_count': word_count,
            }
        )
        return ExtractedContent(text=text, word_count=word_count, title=snapshot.title)
