# playground/services/prompts.py
import json
import re
from typing import Iterable, Optional, Sequence

from playground.services.extract import html_to_text

REPORT_SYSTEM_PROMPT = (
    "You are an expert financial analyst and data visualization specialist.\n"
    "Generate comprehensive, professional financial reports in HTML.\n\n"
    "Structure every report as a sequence of sections. Each section MUST:\n"
    "- be a single top-level element carrying a unique id attribute in the form "
    'data-section-id="section_[type]_[number]" where type is one of '
    "metric, chart, table, text, insight\n"
    "- start with a clear <h2> or <h3> title\n\n"
    "Highlight 2-4 key findings as elements with class=\"insight\" plus one of "
    "info, warning, critical or success.\n"
    "Charts must be CSS or inline SVG only: no <script>, no <canvas>, no JavaScript libraries.\n"
    "Return ONLY the HTML. No markdown code fences, no explanations."
)

ENHANCE_TEMPLATE = (
    "Here is the current report:\n"
    "---\n{current_html}\n---\n\n"
    "Update it according to the request below. Keep every existing data-section-id "
    "that you keep, and return the complete updated report HTML.\n\n"
    "Request: {request}\n"
)

SECTION_EDIT_TEMPLATE = (
    "You are editing a section of a financial report.\n\n"
    "Current Section:\n"
    "Title: {title}\n"
    "Current HTML:\n{html}\n\n"
    "User's Edit Request: {request}\n\n"
    "Generate the UPDATED HTML for this section based on the user's request.\n"
    "Maintain the same structure and keep the data-section-id=\"{anchor}\" attribute.\n"
    "Return only the HTML content, no explanations."
)

SECTION_ADD_TEMPLATE = (
    "You are an expert financial report designer generating ONE new section that "
    "must read coherently with the existing report.\n\n"
    "REPORT CONTEXT:\n"
    "Report Title: {report_title}\n"
    "{conversation}{sections}{data_points}\n\n"
    "USER'S NEW SECTION REQUEST:\n{request}\n\n"
    "Wrap the entire section in one element: "
    '<section data-section-id="section_{type}_{position}"> ... </section>\n'
    "Start it with an <h2> title. CSS or inline SVG only for charts, no JavaScript.\n"
    "Return ONLY the HTML content. NO markdown code blocks, NO explanations."
)

SUGGESTIONS_TEMPLATE = (
    "You are analyzing a financial report to suggest {count} relevant sections that would add value.\n\n"
    "REPORT TITLE: {report_title}\n\n"
    "EXISTING SECTIONS:\n{sections}\n\n"
    "{data_points}"
    "Suggest {count} NEW sections that complement the existing ones and fill gaps in the analysis. "
    "Be specific and reference actual topics or data from the report. Keep each suggestion under 8 words.\n\n"
    'Return ONLY a JSON array of strings, e.g. ["suggestion 1", "suggestion 2"].'
)

DEFAULT_SUGGESTIONS = [
    "Add executive summary section",
    "Create key metrics dashboard",
    "Show financial trends chart",
    "Add risk analysis section",
    "Include recommendations summary",
]

_NUMBER_RE = re.compile(r"[\$£€¥]?\d+(?:,\d{3})*(?:\.\d+)?%?")


def _clip(text: str, limit: int) -> str:
    text = text or ""
    return text if len(text) <= limit else text[:limit] + "..."


def data_points(html: str, limit: int = 5) -> list[str]:
    """Numbers, percentages and money amounts found in a fragment."""
    return _NUMBER_RE.findall(html or "")[:limit]


def report_title(report_meta: Optional[dict]) -> str:
    return (report_meta or {}).get("prompt") or "Financial Report"


# ---------- generation / enhance ----------

def enhance_request(current_html: str, request: str) -> str:
    return ENHANCE_TEMPLATE.format(current_html=current_html, request=request)


def history_messages(messages: Iterable, limit: int) -> list[dict]:
    """Last ``limit`` conversation messages in model wire shape."""
    rows = [{"role": m.role, "content": m.content} for m in messages if m.role in ("user", "assistant")]
    return rows[-limit:] if limit else []


# ---------- section edit / add ----------

def section_edit_prompt(section, request: str) -> str:
    return SECTION_EDIT_TEMPLATE.format(
        title=section.title,
        html=section.html_content,
        request=request,
        anchor=section.anchor or f"section_{section.type}_{section.order + 1}",
    )


def section_add_prompt(
    report_meta: Optional[dict],
    sections: Sequence,
    messages: Sequence,
    request: str,
    section_type: str,
    position: int,
) -> str:
    conversation = ""
    recent = list(messages)[:10]
    if recent:
        conversation = "\n\nConversation History:\n" + "\n".join(
            f"{'User' if m.role == 'user' else 'Assistant'}: {_clip(m.content, 200)}" for m in recent
        )

    if sections:
        previews = "\n\n".join(
            f"{i + 1}. {s.title} ({s.type})\n   Content Preview: {_clip(html_to_text(s.html_content), 300)}"
            for i, s in enumerate(sections)
        )
        sections_ctx = "\n\nExisting Report Sections:\n" + previews
    else:
        sections_ctx = "\n\nThis is the first section of the report."

    points = []
    for s in sections:
        found = data_points(s.html_content)
        if found:
            points.append(f"- {s.title}: {', '.join(found)}")
    points_ctx = "\n\nKey Data Points from Existing Sections:\n" + "\n".join(points) if points else ""

    return SECTION_ADD_TEMPLATE.format(
        report_title=report_title(report_meta),
        conversation=conversation,
        sections=sections_ctx,
        data_points=points_ctx,
        request=request,
        type=section_type or "custom",
        position=position + 1,
    )


# ---------- suggestions ----------

def suggestions_prompt(report_meta: Optional[dict], sections: Sequence, count: int = 5) -> str:
    if sections:
        listing = "\n\n".join(
            f"{i + 1}. {s.title} ({s.type})\n   {_clip(html_to_text(s.html_content), 200)}"
            for i, s in enumerate(sections)
        )
    else:
        listing = "No sections yet."
    points = [p for s in sections for p in data_points(s.html_content, 3)][:10]
    return SUGGESTIONS_TEMPLATE.format(
        count=count,
        report_title=report_title(report_meta),
        sections=listing,
        data_points=f"KEY DATA POINTS: {', '.join(points)}\n\n" if points else "",
    )


def parse_suggestions(raw: str, count: int = 5) -> list[str]:
    """JSON array anywhere in ``raw``; padded from DEFAULT_SUGGESTIONS to ``count``."""
    found: list[str] = []
    m = re.search(r"\[[\s\S]*\]", raw or "")
    if m:
        try:
            data = json.loads(m.group(0))
        except ValueError:
            data = []
        found = [str(x).strip() for x in data if isinstance(x, (str, int, float)) and str(x).strip()]
    for d in DEFAULT_SUGGESTIONS:
        if len(found) >= count:
            break
        if d not in found:
            found.append(d)
    return found[:count]


# ---------- chat summary ----------

def chat_summary(prompt: str, section_count: int, insight_count: int) -> str:
    topic = prompt if len(prompt) <= 60 else prompt[:60] + "..."
    insights = f" with {insight_count} key insights" if insight_count > 0 else ""
    return (
        f'I\'ve created a comprehensive report about "{topic}" with {section_count} sections{insights}. '
        "You can view the full report in the right panel, where you can interact with individual "
        "sections, edit them, or download the report as PDF."
    )
