"""L2 - rule-based scoring.

Each criterion scores the text from 0 to 100 using heuristics and lists the
issues it found. The criteria are combined with the configured
L2Aggregation:

* ``weighted_mean``: sum(score * weight) / sum(weight)
* ``minimum``: the lowest criterion score

Both round to the nearest integer.
"""

from __future__ import annotations

import re
from collections.abc import Callable

from agentloop.config import DEFAULT_L2_WEIGHTS, L2Aggregation
from agentloop.evaluation.schemas import CriterionScore, EvalContext, L2Result, Tone

CriterionFn = Callable[[str, EvalContext], tuple[int, list[str]]]

_RECOMMENDATION_BELOW = 70

_FILLER_PHRASES = (
    "i don't have enough information",
    "i cannot answer",
    "i'm not sure",
    "i don't know",
)
_GRAMMAR_PATTERNS = (
    (re.compile(r"\b(their|they're)\s+(is|are)\b", re.I), "their/there/they're confusion"),
    (re.compile(r"\b(your)\s+(going|gonna)\b", re.I), "your/you're confusion"),
    (re.compile(r"[.!?]\s+[a-z]"), "Missing capitalization after period"),
    (re.compile(r"[a-z]\.[A-Z]"), "Missing space after period"),
)
_RUN_ON = re.compile(r"[^.!?]{150,}")
_ALL_CAPS = re.compile(r"\b[A-Z]{3,}\b")
_INFORMAL = ("gonna", "wanna", "kinda", "sorta", "yeah", "nah", "lol")
_CONTRACTIONS = ("don't", "can't", "won't", "shouldn't", "wouldn't")
_FORMAL = ("pursuant to", "aforementioned", "herewith", "heretofore")
_WARM = ("thank", "appreciate", "happy", "glad", "looking forward")
_CLOSING = re.compile(r"\b(best regards|sincerely|cheers|thanks|thank you|regards)\b", re.I)
_GREETING = re.compile(r"\b(hi|hello|dear|greetings)\b", re.I)


def score_relevance(text: str, ctx: EvalContext) -> tuple[int, list[str]]:
    issues: list[str] = []
    score = 100
    lowered = text.lower()

    if len(text) < 50:
        score -= 30
        issues.append("Response too short")

    for phrase in _FILLER_PHRASES:
        if phrase in lowered:
            score -= 20
            issues.append(f'Contains filler: "{phrase}"')

    if ctx.query:
        query_words = [w for w in ctx.query.lower().split() if len(w) > 3]
        if query_words:
            matched = [w for w in query_words if w in lowered]
            if len(matched) / len(query_words) < 0.3:
                score -= 30
                issues.append("Low keyword overlap with query")

    return score, issues


def score_quality(text: str, ctx: EvalContext) -> tuple[int, list[str]]:
    issues: list[str] = []
    score = 100

    for pattern, description in _GRAMMAR_PATTERNS:
        matches = pattern.findall(text)
        if matches:
            score -= 10 * min(len(matches), 3)
            issues.append(f"Grammar: {description}")

    sentences = [s for s in re.split(r"[.!?]+", text) if s.strip()]
    if not sentences:
        score -= 15
        issues.append("No complete sentences")
    else:
        avg_sentence_length = len(text) / len(sentences)
        if avg_sentence_length > 200:
            score -= 15
            issues.append("Sentences too long")
        if avg_sentence_length < 10:
            score -= 15
            issues.append("Sentences too short")

    run_ons = _RUN_ON.findall(text)
    if run_ons:
        score -= 10 * min(len(run_ons), 2)
        issues.append("Run-on sentences detected")

    return score, issues


def score_tone(text: str, ctx: EvalContext) -> tuple[int, list[str]]:
    issues: list[str] = []
    score = 100
    lowered = text.lower()

    if text.count("!") > 3:
        score -= 10
        issues.append("Too many exclamation marks")

    if len(_ALL_CAPS.findall(text)) > 2:
        score -= 15
        issues.append("Excessive use of ALL CAPS")

    if ctx.expected_tone == Tone.PROFESSIONAL:
        for phrase in _INFORMAL:
            if re.search(rf"\b{phrase}\b", lowered):
                score -= 10
                issues.append(f'Informal language: "{phrase}"')
        if sum(1 for c in _CONTRACTIONS if c in lowered) > 3:
            score -= 5
            issues.append("Too many contractions for professional tone")

    elif ctx.expected_tone == Tone.FRIENDLY:
        for phrase in _FORMAL:
            if phrase in lowered:
                score -= 10
                issues.append(f'Too formal: "{phrase}"')
        if len(text) > 100 and not any(p in lowered for p in _WARM):
            score -= 15
            issues.append("Lacks warmth for friendly tone")

    return score, issues


def score_completeness(text: str, ctx: EvalContext) -> tuple[int, list[str]]:
    issues: list[str] = []
    score = 100
    lowered = text.lower()

    if len(text) > 100 and not _CLOSING.search(text):
        score -= 10
        issues.append("Missing closing/sign-off")

    if len(text) > 100 and not _GREETING.search(text[:50]):
        score -= 10
        issues.append("Missing greeting")

    for element in ctx.required_elements:
        if element.lower() not in lowered:
            score -= 20
            issues.append(f'Missing required element: "{element}"')

    if not re.search(r"[.!?]$", text.strip()):
        score -= 15
        issues.append("Incomplete last sentence")

    return score, issues


CRITERIA: dict[str, CriterionFn] = {
    "relevance": score_relevance,
    "quality": score_quality,
    "tone": score_tone,
    "completeness": score_completeness,
}


def aggregate(breakdown: list[CriterionScore], method: L2Aggregation) -> int:
    if not breakdown:
        return 0
    if method == L2Aggregation.MINIMUM:
        return min(c.score for c in breakdown)
    total_weight = sum(c.weight for c in breakdown)
    if total_weight <= 0:
        return round(sum(c.score for c in breakdown) / len(breakdown))
    return round(sum(c.score * c.weight for c in breakdown) / total_weight)


def score_output(
    text: str,
    context: EvalContext | None = None,
    weights: dict[str, float] | None = None,
    method: L2Aggregation = L2Aggregation.WEIGHTED_MEAN,
    min_score: int = 60,
) -> L2Result:
    """Score ``text`` on every weighted criterion.

    Criteria absent from ``weights`` are skipped. Unknown criterion names
    raise KeyError.
    """
    context = context or EvalContext()
    weights = weights if weights is not None else DEFAULT_L2_WEIGHTS

    breakdown = []
    for name, weight in weights.items():
        raw_score, issues = CRITERIA[name](text, context)
        breakdown.append(
            CriterionScore(
                criterion=name,
                score=max(0, min(100, raw_score)),
                weight=weight,
                issues=issues,
            )
        )

    score = aggregate(breakdown, method)
    recommendations = [
        f"Improve {c.criterion}: {', '.join(c.issues)}"
        for c in breakdown
        if c.score < _RECOMMENDATION_BELOW
    ]
    return L2Result(
        score=score,
        passed=score >= min_score,
        breakdown=breakdown,
        recommendations=recommendations,
    )
