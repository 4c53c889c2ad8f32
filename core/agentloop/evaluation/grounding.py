"""Claim extraction and grounding verification.

Two LLM passes over a prose draft:
1. Extract every verifiable claim (facts, dates, numbers, relationships)
2. Check each claim against the run's source material

grounding_score = round(grounded / verifiable * 100), where unverifiable
claims are excluded from the denominator and count as grounded. With no
verifiable claims the score is 100.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from agentloop.errors import EvaluationFailure
from agentloop.evaluation.schemas import Claim, ClaimType, GroundingResult, GroundingSource
from agentloop.llm import extract_json_object

logger = logging.getLogger(__name__)

TEXT_CONTENT_ACTIONS = frozenset(
    {
        "send_email",
        "send_outlook_email",
        "send_slack_message",
        "send_teams_message",
        "create_notion_page",
        "append_to_notion",
        "create_doc",
        "append_to_doc",
    }
)

_MIN_CONTENT_LENGTH = 20
_MAX_SOURCE_LENGTH = 4000

EXTRACTION_SYSTEM_PROMPT = """You are a claim extraction engine. Identify every verifiable factual assertion in AI-generated content.

Skip greetings, sign-offs, opinions and generic phrases.
Classify each claim as "factual", "temporal", "quantitative" or "relational".

Output only JSON:
{"claims": [{"text": "deal value is $50,000", "type": "quantitative"}]}
If there are no verifiable claims, return {"claims": []}"""

VERIFICATION_SYSTEM_PROMPT = """You are a fact-checking engine. Verify claims against the provided source data.

For each claim return "grounded": true if the sources support it, "grounded": false if
they contradict it or do not mention it, or "unknown": true if it is subjective or not
verifiable. Include short evidence for each.

Output only JSON:
{"results": [{"index": 0, "grounded": true, "evidence": "CRM shows deal value of $50,000"}]}"""


def parse_claims_response(response_text: str) -> list[Claim]:
    """Read extracted claims.

    Raises:
        EvaluationFailure: if the response has no readable ``claims`` list.
    """
    try:
        data = extract_json_object(response_text)
    except (ValueError, json.JSONDecodeError) as e:
        raise EvaluationFailure("Claim extraction returned no readable JSON") from e

    raw_claims = data.get("claims")
    if not isinstance(raw_claims, list):
        raise EvaluationFailure("Claim extraction response has no claims list")

    valid_types = {t.value for t in ClaimType}
    claims = []
    for item in raw_claims:
        if not isinstance(item, dict):
            continue
        text = item.get("text")
        if not isinstance(text, str) or not text:
            continue
        claim_type = item.get("type")
        if not isinstance(claim_type, str) or claim_type not in valid_types:
            claim_type = ClaimType.FACTUAL
        claims.append(Claim(text=text, type=ClaimType(claim_type)))
    return claims


def parse_verification_response(
    response_text: str,
    claims: list[Claim],
) -> tuple[list[Claim], set[int]]:
    """Apply verification results to copies of ``claims``.

    Returns the updated claims and the indices judged unverifiable. Claims
    the response does not mention stay ungrounded.
    """
    updated = [claim.model_copy() for claim in claims]
    unknown: set[int] = set()
    try:
        data = extract_json_object(response_text)
    except (ValueError, json.JSONDecodeError):
        logger.warning("Grounding verification returned no readable JSON")
        return updated, unknown

    results = data.get("results")
    if not isinstance(results, list):
        return updated, unknown

    for entry in results:
        if not isinstance(entry, dict):
            continue
        index = entry.get("index")
        if not isinstance(index, int) or not 0 <= index < len(updated):
            continue
        if entry.get("unknown"):
            updated[index].grounded = True
            updated[index].evidence = entry.get("evidence") or "Not verifiable from sources"
            unknown.add(index)
        else:
            updated[index].grounded = entry.get("grounded") is True
            updated[index].evidence = entry.get("evidence")
    return updated, unknown


def summarize_grounding(claims: list[Claim], unknown: set[int] | None = None) -> GroundingResult:
    unknown = unknown or set()
    grounded = sum(1 for i, c in enumerate(claims) if c.grounded and i not in unknown)
    ungrounded = sum(1 for i, c in enumerate(claims) if not c.grounded and i not in unknown)
    verifiable = grounded + ungrounded
    score = round(grounded / verifiable * 100) if verifiable > 0 else 100
    return GroundingResult(
        claims=claims,
        grounded_count=grounded,
        ungrounded_count=ungrounded,
        unknown_count=len(unknown),
        grounding_score=score,
    )


class GroundingVerifier:
    """Extracts claims from a draft and verifies them against sources."""

    def __init__(self, llm_provider: Any, max_tokens: int = 1024) -> None:
        self._llm = llm_provider
        self._max_tokens = max_tokens

    @staticmethod
    def applies_to(action: str) -> bool:
        return action in TEXT_CONTENT_ACTIONS

    async def extract_claims(self, content: str, action: str) -> list[Claim]:
        if len(content) < _MIN_CONTENT_LENGTH:
            return []
        response = await self._llm.acomplete(
            messages=[
                {
                    "role": "user",
                    "content": f"Extract claims from this {action or 'content'} draft.\n\n"
                    f"Content to analyze:\n\n{content}",
                }
            ],
            system=EXTRACTION_SYSTEM_PROMPT,
            max_tokens=self._max_tokens,
            temperature=0.1,
        )
        return parse_claims_response(response.content)

    async def verify_claims(
        self,
        claims: list[Claim],
        sources: list[GroundingSource],
        action: str,
    ) -> GroundingResult:
        if not claims or not sources:
            return GroundingResult(
                claims=claims,
                unknown_count=len(claims),
                grounding_score=100,
            )

        claims_list = "\n".join(f'[{i}] "{c.text}" ({c.type.value})' for i, c in enumerate(claims))
        sources_list = "\n\n".join(
            f"--- {s.label} ({s.type}) ---\n{_truncate(s.content)}" for s in sources
        )
        response = await self._llm.acomplete(
            messages=[
                {
                    "role": "user",
                    "content": f"Verify these claims against the source data below.\n"
                    f"Action type: {action}\n\nCLAIMS:\n{claims_list}\n\n"
                    f"SOURCE DATA:\n{sources_list}",
                }
            ],
            system=VERIFICATION_SYSTEM_PROMPT,
            max_tokens=self._max_tokens,
            temperature=0.1,
        )
        verified, unknown = parse_verification_response(response.content, claims)
        return summarize_grounding(verified, unknown)

    async def verify(
        self,
        content: str,
        action: str,
        sources: list[GroundingSource],
    ) -> GroundingResult:
        claims = await self.extract_claims(content, action)
        result = await self.verify_claims(claims, sources, action)
        logger.info(
            f"Grounding for {action}: {result.grounded_count} grounded, "
            f"{result.ungrounded_count} ungrounded, score {result.grounding_score}"
        )
        return result


def _truncate(content: str) -> str:
    if len(content) <= _MAX_SOURCE_LENGTH:
        return content
    return content[:_MAX_SOURCE_LENGTH] + "\n... [truncated]"
