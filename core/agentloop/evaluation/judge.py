"""L3 - model-as-judge review.

The judge is only consulted when the configured L3Trigger fires. Its
response must be a JSON object; anything that cannot be parsed into a
JudgeVerdict raises EvaluationFailure so the evaluator can route the run to
human review.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from agentloop.config import EvaluationPolicy, L3Trigger
from agentloop.errors import EvaluationFailure
from agentloop.evaluation.schemas import (
    Claim,
    ClaimType,
    EvalContext,
    JudgeVerdict,
    Verdict,
)
from agentloop.llm import extract_json_object

logger = logging.getLogger(__name__)

_CLAIM_TYPES = {t.value for t in ClaimType}

JUDGE_SYSTEM_PROMPT = """You are an expert evaluator assessing AI-generated content before it is sent.

Evaluate accuracy, appropriateness, safety, completeness and quality.
List every concrete factual claim and whether the provided context supports it.

Action being evaluated: {action}

Respond with JSON only:
{{
  "verdict": "pass" | "fail" | "retry",
  "confidence": 0.0-1.0,
  "score": 0-100,
  "reason": "brief explanation",
  "claims": [{{"text": "...", "type": "factual|temporal|quantitative|relational", "grounded": true}}],
  "suggestions": ["..."]
}}

Use "fail" for false information, harmful or inappropriate content, or missing
critical information. Use "retry" when the draft is salvageable but should be
regenerated."""


def is_irreversible_action(action: str, irreversible_actions: tuple[str, ...]) -> bool:
    lowered = (action or "").lower()
    return any(name in lowered for name in irreversible_actions)


def should_trigger(
    policy: EvaluationPolicy,
    context: EvalContext,
    l2_score: int | None,
    l2_min_score: int,
) -> bool:
    """Decide whether the judge runs for this output."""
    mode = policy.l3_trigger
    if mode == L3Trigger.ALWAYS:
        return True
    if mode == L3Trigger.NEVER:
        return False
    if mode == L3Trigger.ON_IRREVERSIBLE_ACTION:
        return is_irreversible_action(context.action, policy.irreversible_actions)
    if mode == L3Trigger.ON_LOW_CONFIDENCE:
        if context.confidence is None or context.confidence < policy.min_confidence:
            return True
        return l2_score is None or l2_score < l2_min_score
    raise EvaluationFailure(f"Unknown L3 trigger mode: {mode}")


def _parse_claims(raw: Any) -> list[Claim]:
    if not isinstance(raw, list):
        return []
    claims = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        text = item.get("text")
        if not isinstance(text, str) or not text:
            continue
        claim_type = item.get("type")
        if not isinstance(claim_type, str) or claim_type not in _CLAIM_TYPES:
            claim_type = ClaimType.FACTUAL
        claims.append(
            Claim(
                text=text,
                type=ClaimType(claim_type),
                grounded=item.get("grounded") is True,
                evidence=item.get("evidence"),
            )
        )
    return claims


def parse_verdict(response_text: str) -> JudgeVerdict:
    """Parse a judge response.

    Accepts the ``verdict`` form, and the older ``shouldBlock``/``score``
    form where a blocked draft is a fail and a score under 70 a retry.

    Raises:
        EvaluationFailure: if no usable verdict can be read.
    """
    try:
        data = extract_json_object(response_text)
    except (ValueError, json.JSONDecodeError) as e:
        raise EvaluationFailure(f"Malformed judge response: {e}") from e

    score = data.get("score")
    if "verdict" in data:
        try:
            verdict = Verdict(str(data["verdict"]).lower())
        except ValueError as e:
            raise EvaluationFailure(f"Unknown judge verdict: {data['verdict']!r}") from e
    elif "shouldBlock" in data:
        if data["shouldBlock"]:
            verdict = Verdict.FAIL
        elif isinstance(score, (int, float)) and score < 70:
            verdict = Verdict.RETRY
        else:
            verdict = Verdict.PASS
    else:
        raise EvaluationFailure("Judge response has no verdict")

    confidence = data.get("confidence")
    if not isinstance(confidence, (int, float)) or not 0.0 <= confidence <= 1.0:
        raise EvaluationFailure(f"Judge confidence missing or out of range: {confidence!r}")

    suggestions = data.get("suggestions") or []
    return JudgeVerdict(
        verdict=verdict,
        confidence=float(confidence),
        reason=str(data.get("reason") or ""),
        claims=_parse_claims(data.get("claims")),
        suggestions=[str(s) for s in suggestions if s],
        score=int(score) if isinstance(score, (int, float)) else None,
    )


class Judge:
    """Interface for an L3 reviewer."""

    async def judge(self, output: str, context: EvalContext) -> JudgeVerdict:
        raise NotImplementedError


class LLMJudge(Judge):
    """Judge backed by an LLM provider exposing ``acomplete``."""

    def __init__(self, llm_provider: Any, max_tokens: int = 1024, temperature: float = 0.1) -> None:
        self._llm = llm_provider
        self._max_tokens = max_tokens
        self._temperature = temperature

    def _build_user_prompt(self, output: str, context: EvalContext) -> str:
        prompt = f"Evaluate this content:\n\n{output}"
        details: dict[str, Any] = {}
        if context.recipient_name:
            details["recipient_name"] = context.recipient_name
        if context.query:
            details["query"] = context.query
        if context.sources:
            details["sources"] = [s.model_dump() for s in context.sources]
        details.update(context.extra)
        if details:
            prompt += f"\n\nContext:\n{json.dumps(details, indent=2, default=str)}"
        prompt += "\n\nProvide your evaluation in JSON format."
        return prompt

    async def judge(self, output: str, context: EvalContext) -> JudgeVerdict:
        response = await self._llm.acomplete(
            messages=[{"role": "user", "content": self._build_user_prompt(output, context)}],
            system=JUDGE_SYSTEM_PROMPT.format(action=context.action or "unspecified"),
            max_tokens=self._max_tokens,
            temperature=self._temperature,
        )
        content = response.content if hasattr(response, "content") else str(response)
        verdict = parse_verdict(content)
        logger.debug(f"Judge verdict {verdict.verdict} (confidence {verdict.confidence:.2f})")
        return verdict
