"""Severity triage for incoming reports using an LLM.

Given the free-text description and category of a report, returns a
severity tier (low, medium, high) with a short rationale. The LLM is a
best-effort dependency: a missing provider, an error, a timeout, or
unparsable output all fall back to a local keyword heuristic so report
submission never blocks or fails on classification.
"""

import asyncio
import logging
from typing import Literal

from pydantic import BaseModel, field_validator

from resq.core import llm
from resq.core.config import get_config

logger = logging.getLogger(__name__)

UNAVAILABLE_REASON = "AI unavailable"

Severity = Literal["low", "medium", "high"]

_SYSTEM_PROMPT = """\
You triage disaster reports for an emergency dispatch desk.

Determine the severity (low, medium, or high).
"high" means life-threatening, immediate rescue needed, fire, or severe injury.
"medium" means property damage or non-critical injury.
"low" means minor inconvenience or observation.

Return ONLY a JSON object: {"severity": "low" | "medium" | "high", "reason": "short explanation"}"""


class SeverityAssessment(BaseModel):
    """Classifier response: severity tier and rationale."""

    severity: Severity = "medium"
    reason: str = "AI Analysis"

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value):
        if value is None or value == "":
            return "medium"
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("reason", mode="before")
    @classmethod
    def _default_reason(cls, value):
        return value or "AI Analysis"


def _matches_keywords(description: str) -> bool:
    text = description.lower()
    return any(keyword in text for keyword in get_config().severity_keywords)


def fallback_assessment(description: str, *, unavailable: bool = False) -> SeverityAssessment:
    """Local keyword heuristic used when the LLM cannot answer.

    Args:
        description: Report free text
        unavailable: True when a provider is configured but failed, False
            when running without any provider
    """
    if _matches_keywords(description):
        mode = UNAVAILABLE_REASON if unavailable else "fallback mode"
        return SeverityAssessment(severity="high", reason=f"Keywords detected ({mode})")
    if unavailable:
        return SeverityAssessment(severity="medium", reason=UNAVAILABLE_REASON)
    return SeverityAssessment(severity="medium", reason="Standard assessment (fallback mode)")


def _build_prompt(description: str, category: str) -> str:
    return "\n".join(
        [
            "Analyze the following disaster report.",
            f"Category: {category}",
            f'Description: "{description}"',
        ]
    )


async def _call_azure_openai(user_prompt: str) -> str:
    """Call Azure OpenAI with JSON mode."""
    response = await llm.get_azure_client().chat.completions.create(
        model=llm.azure_deployment(),
        messages=[
            {"role": "system", "content": _SYSTEM_PROMPT},
            {"role": "user", "content": user_prompt},
        ],
        response_format={"type": "json_object"},
        temperature=0,
    )
    return response.choices[0].message.content or ""


async def _call_anthropic(user_prompt: str) -> str:
    """Call Anthropic Claude with JSON output."""
    response = await llm.get_anthropic_client().messages.create(
        model=llm.ANTHROPIC_MODEL,
        max_tokens=256,
        system=_SYSTEM_PROMPT,
        messages=[{"role": "user", "content": user_prompt}],
    )
    return response.content[0].text.strip()


def _clean_json(text: str) -> str:
    """Strip markdown code fences if the model wraps its JSON output."""
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        # Drop first line (```json) and last line (```)
        lines = [line for line in lines[1:] if line.strip() != "```"]
        text = "\n".join(lines).strip()
    return text


async def classify_severity(
    description: str,
    category: str,
    *,
    timeout: float | None = None,
) -> SeverityAssessment:
    """Classify a report's severity.

    Never raises: every failure degrades to ``fallback_assessment``.

    Args:
        description: Report free text
        category: Report category (fire, medical, flood, rescue)
        timeout: Seconds to wait for the LLM (defaults to config)

    Returns:
        Severity tier and reason
    """
    provider = llm.configured_provider()
    if provider is None:
        logger.debug("No LLM provider configured, using keyword severity heuristic")
        return fallback_assessment(description)

    prompt = _build_prompt(description, category)
    call = _call_azure_openai if provider == "azure_openai" else _call_anthropic
    limit = timeout if timeout is not None else get_config().classifier_timeout

    try:
        text = await asyncio.wait_for(call(prompt), limit)
    except TimeoutError:
        logger.warning("Severity classifier timed out after %.1fs", limit)
        return fallback_assessment(description, unavailable=True)
    except Exception:
        logger.warning("Severity classifier call failed", exc_info=True)
        return fallback_assessment(description, unavailable=True)

    clean = _clean_json(text or "")
    if not clean:
        logger.warning("Severity classifier returned an empty response")
        return fallback_assessment(description, unavailable=True)

    try:
        result = SeverityAssessment.model_validate_json(clean)
    except ValueError:
        logger.warning("Failed to parse severity JSON: %s", clean[:200])
        return fallback_assessment(description, unavailable=True)

    logger.info("Classified %s report as %s (%s)", category, result.severity, result.reason)
    return result
