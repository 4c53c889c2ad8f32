"""LiteLLM-backed provider for the calls the pipeline makes itself.

Only the L3 judge, claim grounding and prompt rewrites call a model; running
the agent is the runtime's job. Any object exposing the same ``acomplete``
signature can be injected instead (tests use AsyncMock).
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any

import litellm

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


@dataclass
class LLMResponse:
    """Normalized completion returned by a provider."""

    content: str
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    cost: float = 0.0
    latency_ms: int = 0


class LiteLLMProvider:
    """Async completion client over ``litellm.acompletion``."""

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        temperature: float = 0.1,
        timeout: float | None = None,
    ) -> None:
        self.model = model
        self.provider_name = "litellm"
        self._api_key = api_key
        self._temperature = temperature
        self._timeout = timeout

    async def acomplete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 1024,
        temperature: float | None = None,
        **kwargs: Any,
    ) -> LLMResponse:
        full_messages = list(messages)
        if system:
            full_messages.insert(0, {"role": "system", "content": system})

        start_time = time.perf_counter()
        response = await litellm.acompletion(
            model=self.model,
            messages=full_messages,
            max_tokens=max_tokens,
            temperature=self._temperature if temperature is None else temperature,
            api_key=self._api_key,
            timeout=self._timeout,
            **kwargs,
        )
        latency_ms = int((time.perf_counter() - start_time) * 1000)

        usage = getattr(response, "usage", None)
        usage_dict = {
            "input_tokens": getattr(usage, "prompt_tokens", 0) or 0,
            "output_tokens": getattr(usage, "completion_tokens", 0) or 0,
        }
        usage_dict["total_tokens"] = usage_dict["input_tokens"] + usage_dict["output_tokens"]

        try:
            cost = float(litellm.completion_cost(completion_response=response))
        except Exception as e:
            logger.debug(f"No pricing available for {self.model}: {e}")
            cost = 0.0

        return LLMResponse(
            content=response.choices[0].message.content or "",
            model=getattr(response, "model", self.model) or self.model,
            usage=usage_dict,
            cost=cost,
            latency_ms=latency_ms,
        )


def extract_json_object(text: str) -> dict[str, Any]:
    """Pull the first JSON object out of a model response.

    Handles markdown code fences and leading prose. Raises ValueError when no
    object can be decoded.
    """
    match = _JSON_OBJECT.search(text or "")
    if not match:
        raise ValueError("No JSON object found in response")
    data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError("Response JSON is not an object")
    return data
