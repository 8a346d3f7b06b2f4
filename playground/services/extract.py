# playground/services/extract.py
"""
Turn the settled model output into addressable report pieces.

Sections are the top-level elements that carry a ``data-section-id``
attribute.  Their boundaries come from an offset-tracking tag scan: each one
is captured verbatim, from its start tag to the close tag that brings the
element's own nesting depth back to zero, so sections full of nested <div>s
come out whole.  An element whose close tag never shows up is dropped rather
than stored half-finished; scanning resumes inside it so any complete sections
it swallowed are still found.  lxml would silently repair such an element,
which is why the scan only locates boundaries.

Everything that reads markup (start-tag attributes, headings, text, insight
cards) goes through ``lxml.html``.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, asdict
from typing import Callable, Iterator, Optional

from lxml import etree
from lxml import html as lxml_html

SECTION_ATTR = "data-section-id"
DEFAULT_TITLE = "Untitled Section"
# first keyword contained in the data-section-id value wins
TYPE_KEYWORDS = ("chart", "table", "metric", "insight")
HEADING_TAGS = ("h2", "h3", "h4")

VOID_TAGS = frozenset({
    "area", "base", "br", "col", "embed", "hr", "img", "input",
    "link", "meta", "param", "source", "track", "wbr",
})
RAW_TEXT_TAGS = frozenset({"script", "style"})

_TAG_RE = re.compile(
    r"<!--.*?-->|<(/)?([a-zA-Z][a-zA-Z0-9:-]*)((?:\"[^\"]*\"|'[^']*'|[^'\">])*)>",
    re.S,
)
_FENCE_RE = re.compile(r"```[a-zA-Z0-9_-]*")
_WS_RE = re.compile(r"\s+")


@dataclass
class ExtractedSection:
    id: str
    type: str
    title: str
    html_content: str
    order: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ExtractedInsight:
    id: str
    text: str
    severity: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class _Tag:
    name: str
    closing: bool
    attrs: str
    start: int
    end: int
    self_closing: bool

    @property
    def opens_scope(self) -> bool:
        return not self.closing and not self.self_closing and self.name not in VOID_TAGS


# ---------- cleaning ----------

def clean_html(text: str) -> str:
    """Drop code fences and any prose before the first / after the last tag."""
    if not text:
        return ""
    s = _FENCE_RE.sub("", text)
    first = s.find("<")
    if first > 0:
        s = s[first:]
    last = s.rfind(">")
    if last >= 0:
        s = s[: last + 1]
    return s.strip()


# ---------- lxml views ----------

def _squash(text: str) -> str:
    return _WS_RE.sub(" ", text or "").strip()


def parse_markup(markup: str) -> Optional[lxml_html.HtmlElement]:
    """Fragment or whole document as one element tree, minus scripts, styles and comments."""
    if not markup or not markup.strip():
        return None
    try:
        root = lxml_html.fromstring(markup)
    except etree.ParserError:
        return None
    if not isinstance(root.tag, str) or root.tag in RAW_TEXT_TAGS:
        return None
    etree.strip_elements(root, etree.Comment, *RAW_TEXT_TAGS, with_tail=False)
    return root


def html_to_text(fragment: str) -> str:
    root = parse_markup(fragment)
    if root is None:
        return ""
    # block boundaries become spaces
    return _squash(" ".join(root.itertext()))


def start_tag_attrs(raw: str) -> dict[str, str]:
    """Attributes of one start tag, given the raw text between its name and ``>``."""
    return dict(lxml_html.fragment_fromstring(f"<div{raw}></div>").attrib)


# ---------- boundary scan ----------

def _iter_tags(html: str, pos: int = 0) -> Iterator[_Tag]:
    while True:
        m = _TAG_RE.search(html, pos)
        if not m:
            return
        pos = m.end()
        if m.group(2) is None:  # comment
            continue
        name = m.group(2).lower()
        attrs = m.group(3) or ""
        tag = _Tag(
            name=name,
            closing=bool(m.group(1)),
            attrs=attrs,
            start=m.start(),
            end=m.end(),
            self_closing=attrs.rstrip().endswith("/"),
        )
        yield tag
        if tag.opens_scope and name in RAW_TEXT_TAGS:
            close = re.compile(rf"</{name}\s*>", re.I).search(html, pos)
            pos = close.start() if close else len(html)


def _match_close(html: str, opener: _Tag) -> Optional[int]:
    depth = 1
    for tag in _iter_tags(html, opener.end):
        if tag.name != opener.name or tag.self_closing or tag.name in VOID_TAGS:
            continue
        if tag.closing:
            depth -= 1
            if depth == 0:
                return tag.end
        else:
            depth += 1
    return None


def scan_fragments(
    html: str, wants: Callable[[dict[str, str]], bool], hint: str
) -> tuple[list[tuple[int, int, dict[str, str]]], int]:
    """
    Find top-level elements whose attributes satisfy ``wants``.  Only start
    tags whose raw text contains ``hint`` are parsed.

    Returns ``([(start, end, attrs), ...], dropped)`` where ``dropped`` counts
    openers that never closed.
    """
    spans: list[tuple[int, int, dict[str, str]]] = []
    dropped = 0
    pos = 0
    hint = hint.lower()
    while True:
        opener = None
        opener_attrs: dict[str, str] = {}
        for tag in _iter_tags(html, pos):
            if not tag.opens_scope or hint not in tag.attrs.lower():
                continue
            attrs = start_tag_attrs(tag.attrs)
            if wants(attrs):
                opener, opener_attrs = tag, attrs
                break
        if opener is None:
            break
        end = _match_close(html, opener)
        if end is None:
            dropped += 1
            pos = opener.end
            continue
        spans.append((opener.start, end, opener_attrs))
        pos = end
    return spans, dropped


# ---------- sections ----------

def section_type_for(marker: str) -> str:
    value = (marker or "").lower()
    for keyword in TYPE_KEYWORDS:
        if keyword in value:
            return keyword
    return "text"


def section_title(fragment: str, default: str = DEFAULT_TITLE) -> str:
    root = parse_markup(fragment)
    if root is None:
        return default
    for heading in root.iter(*HEADING_TAGS):
        title = _squash(heading.text_content())
        if title:
            return title
    return default


def scan_sections(html: str) -> tuple[list[ExtractedSection], int]:
    spans, dropped = scan_fragments(
        html or "", lambda attrs: bool(attrs.get(SECTION_ATTR, "").strip()), hint=SECTION_ATTR
    )
    sections = []
    for order, (start, end, attrs) in enumerate(spans):
        marker = attrs[SECTION_ATTR].strip()
        fragment = html[start:end]
        sections.append(
            ExtractedSection(
                id=marker,
                type=section_type_for(marker),
                title=section_title(fragment),
                html_content=fragment,
                order=order,
            )
        )
    return sections, dropped


def extract_sections(html: str) -> list[ExtractedSection]:
    return scan_sections(html)[0]


# ---------- insights ----------

def _classes(el) -> str:
    return (el.get("class") or "").lower()


def _is_insight(el) -> bool:
    return "insight" in _classes(el)


def insight_severity(classes: str, text: str = "") -> str:
    s = f"{classes} {text}".lower()
    if "critical" in s or "danger" in s:
        return "critical"
    if "warning" in s:
        return "warning"
    if "success" in s or "positive" in s:
        return "success"
    return "info"


def extract_insights(html: str) -> list[ExtractedInsight]:
    """
    Innermost elements whose class mentions "insight".  A wrapper such as
    ``key-insights`` only counts when it holds no insight cards of its own.
    """
    root = parse_markup(html)
    if root is None:
        return []
    insights: list[ExtractedInsight] = []
    for el in root.iter(etree.Element):
        if not _is_insight(el):
            continue
        if any(_is_insight(d) for d in el.iterdescendants(etree.Element)):
            continue
        text = _squash(" ".join(el.itertext()))
        if not text:
            continue
        insights.append(
            ExtractedInsight(
                id=f"insight_{len(insights) + 1}",
                text=text,
                severity=insight_severity(_classes(el), text),
            )
        )
    return insights


__all__ = [
    "ExtractedSection",
    "ExtractedInsight",
    "clean_html",
    "html_to_text",
    "parse_markup",
    "start_tag_attrs",
    "extract_sections",
    "scan_sections",
    "scan_fragments",
    "extract_insights",
    "section_type_for",
    "section_title",
    "insight_severity",
]
