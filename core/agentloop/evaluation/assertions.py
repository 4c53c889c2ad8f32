"""L1 - deterministic assertions.

Fast, side-effect-free checks that run before anything else. Each check in
CHECKS takes the candidate text, the assertion params and the run context and
returns whether it passed plus an optional message. Only failures of
``block`` severity fail the tier; every result is kept for audit.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

from agentloop.errors import EvaluationFailure
from agentloop.evaluation.schemas import (
    Assertion,
    AssertionResult,
    EvalContext,
    L1Result,
    Severity,
)

CheckFn = Callable[[str, dict[str, Any], EvalContext], tuple[bool, str | None]]

_PLACEHOLDER = re.compile(r"\{\{[^}]+\}\}|\[[A-Z][^\]]*\]|\{[a-z_]+\}")
_EMAIL = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_GENERIC_GREETINGS = [
    re.compile(r"dear sir/madam", re.IGNORECASE),
    re.compile(r"to whom it may concern", re.IGNORECASE),
    re.compile(r"dear hiring manager", re.IGNORECASE),
    re.compile(r"hello there", re.IGNORECASE),
]
_LANGUAGE_WORDS = {
    "en": re.compile(r"\b(the|and|is|are|was|were|have|has|will|would|can|could)\b", re.I),
    "fr": re.compile(r"\b(le|la|les|de|et|est|sont|avoir|être|je|tu|il|elle|nous|vous)\b", re.I),
    "es": re.compile(r"\b(el|la|los|las|de|y|es|son|tener|ser|yo|tú|él|ella|nosotros)\b", re.I),
    "de": re.compile(r"\b(der|die|das|den|dem|und|ist|sind|haben|sein|ich|du|er|sie|wir)\b", re.I),
}
_PROFANITY = ("fuck", "shit", "damn", "bitch")
_LEADING_GREETING = re.compile(r"^(hi|hello|dear|greetings)[^.!?\n]*", re.IGNORECASE)
_TRAILING_SIGNOFF = re.compile(r"(best regards|sincerely|cheers|thanks)[^.!?\n]*$", re.IGNORECASE)

_DEFAULT_MAX_LENGTH = 10000
_DEFAULT_MIN_LENGTH = 10
_MIN_REAL_CONTENT = 50
_MIN_LANGUAGE_HITS = 3


def _no_placeholders(text: str, params: dict[str, Any], ctx: EvalContext) -> tuple[bool, str | None]:
    matches = _PLACEHOLDER.findall(text)
    if matches:
        return False, f"Found placeholders: {', '.join(matches)}"
    return True, None


def _contains_recipient_name(
    text: str, params: dict[str, Any], ctx: EvalContext
) -> tuple[bool, str | None]:
    name = ctx.recipient_name
    if not name:
        return True, None
    first_name = name.split(" ")[0]
    if first_name in text or name in text:
        return True, None
    return False, f'Recipient name "{name}" not found'


def _no_generic_greeting(
    text: str, params: dict[str, Any], ctx: EvalContext
) -> tuple[bool, str | None]:
    if any(p.search(text) for p in _GENERIC_GREETINGS):
        return False, "Generic greeting detected"
    return True, None


def _respects_max_length(
    text: str, params: dict[str, Any], ctx: EvalContext
) -> tuple[bool, str | None]:
    max_length = int(params.get("max_length") or _DEFAULT_MAX_LENGTH)
    if len(text) <= max_length:
        return True, None
    return False, f"Text too long: {len(text)} chars (max {max_length})"


def _respects_min_length(
    text: str, params: dict[str, Any], ctx: EvalContext
) -> tuple[bool, str | None]:
    min_length = int(params.get("min_length") or _DEFAULT_MIN_LENGTH)
    if len(text) >= min_length:
        return True, None
    return False, f"Text too short: {len(text)} chars (min {min_length})"


def _correct_language(
    text: str, params: dict[str, Any], ctx: EvalContext
) -> tuple[bool, str | None]:
    language = params.get("language") or "en"
    pattern = _LANGUAGE_WORDS.get(language)
    if pattern is None:
        raise EvaluationFailure(f"Unsupported language for correct_language: {language}")
    if len(pattern.findall(text)) >= _MIN_LANGUAGE_HITS:
        return True, None
    return False, f"Expected language: {language}"


def _no_profanity(text: str, params: dict[str, Any], ctx: EvalContext) -> tuple[bool, str | None]:
    lowered = text.lower()
    if any(re.search(rf"\b{word}", lowered) for word in _PROFANITY):
        return False, "Inappropriate content detected"
    return True, None


def _has_valid_email(
    text: str, params: dict[str, Any], ctx: EvalContext
) -> tuple[bool, str | None]:
    if not params.get("require_email"):
        return True, None
    if _EMAIL.search(text):
        return True, None
    return False, "No valid email found"


def _has_real_content(
    text: str, params: dict[str, Any], ctx: EvalContext
) -> tuple[bool, str | None]:
    body = _LEADING_GREETING.sub("", text)
    body = _TRAILING_SIGNOFF.sub("", body).strip()
    if len(body) > _MIN_REAL_CONTENT:
        return True, None
    return False, f"Too little content: {len(body)} chars"


CHECKS: dict[str, CheckFn] = {
    "no_placeholders": _no_placeholders,
    "contains_recipient_name": _contains_recipient_name,
    "no_generic_greeting": _no_generic_greeting,
    "respects_max_length": _respects_max_length,
    "respects_min_length": _respects_min_length,
    "correct_language": _correct_language,
    "no_profanity": _no_profanity,
    "has_valid_email": _has_valid_email,
    "has_real_content": _has_real_content,
}


def run_assertion(text: str, assertion: Assertion, context: EvalContext) -> AssertionResult:
    check = CHECKS.get(assertion.check)
    if check is None:
        raise EvaluationFailure(f"Unknown assertion check: {assertion.check}")
    passed, message = check(text, assertion.params, context)
    return AssertionResult(
        check=assertion.check,
        passed=passed,
        severity=assertion.severity,
        message=message,
    )


def evaluate_assertions(
    text: str,
    assertions: list[Assertion],
    context: EvalContext | None = None,
) -> L1Result:
    """Run every assertion; the tier fails only on block-severity failures.

    Raises:
        EvaluationFailure: if an assertion names an unknown check.
    """
    context = context or EvalContext()
    results = [run_assertion(text, assertion, context) for assertion in assertions]
    passed = not any(not r.passed and r.severity == Severity.BLOCK for r in results)
    return L1Result(passed=passed, results=results)
