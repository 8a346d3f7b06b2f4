# playground/services/suggestions.py
import logging
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from playground import llm_client
from playground.errors import LLMError
from playground.services import prompts
from playground.services.report_store import get_report
from playground.services.usage import record_operation
from playground.settings.config import settings

logger = logging.getLogger(__name__)

Completer = Callable[..., Awaitable[str]]


async def suggest_sections(
    db: AsyncSession,
    report_id: str,
    *,
    model: Optional[str] = None,
    provider: Optional[str] = None,
    count: int = 5,
    complete: Completer = llm_client.complete_text,
) -> list[str]:
    """
    Ask the model for follow-up section ideas for a report. A ``suggestion``
    usage operation is recorded whenever the model answered; on model failure
    the generic defaults are returned and nothing is metered. Caller commits.
    """
    report = await get_report(db, report_id)
    sections = sorted(report.sections, key=lambda s: s.order)
    model = model or settings.DEFAULT_MODEL
    provider = (provider or settings.LLM_PROVIDER).lower()

    seen = {"in": 0, "out": 0}

    def on_usage(tin: int, tout: int) -> None:
        seen["in"], seen["out"] = tin, tout

    try:
        raw = await complete(
            prompts.suggestions_prompt(report.meta, sections, count),
            system_prompt="You are a financial analysis expert. Return only valid JSON.",
            model=model,
            provider=provider,
            on_usage=on_usage,
        )
    except LLMError as e:
        logger.warning("Suggestions for report %s fell back to defaults: %s", report_id, e)
        return prompts.parse_suggestions("", count)

    await record_operation(db, report_id, "suggestion", model, provider, seen["in"], seen["out"])
    return prompts.parse_suggestions(raw, count)
