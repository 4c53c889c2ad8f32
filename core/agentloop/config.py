"""
Pipeline Configuration

Policy constants for every stage of the pipeline live here rather than in the
components, so each deployment can tune them:
- EvaluationPolicy: L2 aggregation, auto-send bar, L3 trigger and judge limits
- OptimizationPolicy: analysis window and proposal thresholds
- ABTestPolicy: sample size and winning margin
- SwarmPolicy: batch width
- LLMSettings: models used for the judge and for prompt rewrites

Values can be loaded from the environment (``AGENTLOOP_*``), with a ``.env``
file picked up by python-dotenv.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

from dotenv import load_dotenv


class L2Aggregation(StrEnum):
    """How per-criterion L2 scores are combined into one score."""

    WEIGHTED_MEAN = "weighted_mean"
    MINIMUM = "minimum"


class L3Trigger(StrEnum):
    """When the model-as-judge review runs."""

    ALWAYS = "always"
    ON_IRREVERSIBLE_ACTION = "on_irreversible_action"
    ON_LOW_CONFIDENCE = "on_low_confidence"
    NEVER = "never"


DEFAULT_L2_WEIGHTS: dict[str, float] = {
    "relevance": 0.3,
    "quality": 0.25,
    "tone": 0.2,
    "completeness": 0.25,
}

IRREVERSIBLE_ACTIONS: tuple[str, ...] = (
    "send_email",
    "send_message",
    "post_social",
    "delete_data",
    "transfer_money",
    "submit_form",
    "publish_content",
)


@dataclass
class EvaluationPolicy:
    """Thresholds for the three evaluation tiers and the final decision."""

    l2_aggregation: L2Aggregation = L2Aggregation.WEIGHTED_MEAN
    l2_weights: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_L2_WEIGHTS))
    l2_min_score: int = 60
    auto_send_threshold: int = 85
    min_confidence: float = 0.7
    require_approval: bool = False
    l3_trigger: L3Trigger = L3Trigger.ON_IRREVERSIBLE_ACTION
    judge_min_confidence: float = 0.6
    judge_timeout_seconds: float = 30.0
    irreversible_actions: tuple[str, ...] = IRREVERSIBLE_ACTIONS

    @classmethod
    def strict(cls) -> EvaluationPolicy:
        """Every output is judged and nothing is sent without a human."""
        return cls(
            l2_aggregation=L2Aggregation.MINIMUM,
            auto_send_threshold=95,
            min_confidence=0.9,
            require_approval=True,
            l3_trigger=L3Trigger.ALWAYS,
        )

    @classmethod
    def permissive(cls) -> EvaluationPolicy:
        return cls(
            auto_send_threshold=70,
            min_confidence=0.5,
            l3_trigger=L3Trigger.NEVER,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["l2_aggregation"] = self.l2_aggregation.value
        data["l3_trigger"] = self.l3_trigger.value
        data["irreversible_actions"] = list(self.irreversible_actions)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EvaluationPolicy:
        data = dict(data)
        if "l2_aggregation" in data:
            data["l2_aggregation"] = L2Aggregation(data["l2_aggregation"])
        if "l3_trigger" in data:
            data["l3_trigger"] = L3Trigger(data["l3_trigger"])
        if "irreversible_actions" in data:
            data["irreversible_actions"] = tuple(data["irreversible_actions"])
        return cls(**data)


@dataclass
class OptimizationPolicy:
    """Thresholds used by the performance analyzer and modification proposer."""

    window_days: int = 30
    neutral_satisfaction: float = 3.0
    failure_mode_min_frequency: float = 0.1
    max_failure_modes: int = 5

    healthy_satisfaction: float = 4.0
    healthy_completion_rate: float = 0.8
    max_hallucination_rate: float = 0.1

    low_satisfaction: float = 3.5
    downgrade_min_satisfaction: float = 4.0
    downgrade_min_cost: float = 0.5
    downgrade_savings_ratio: float = 0.7
    premium_tier: str = "opus"
    downgrade_model: str = "claude-3-5-sonnet-20241022"

    underused_tool_rate: float = 0.05
    min_tools_for_pruning: int = 2

    rag_similarity_threshold: float = 0.7
    rag_max_results: int = 5

    temperature_ceiling: float = 0.5
    temperature_step: float = 0.2
    temperature_floor: float = 0.3

    prompt_word_budget: int = 500

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OptimizationPolicy:
        return cls(**data)


@dataclass
class ABTestPolicy:
    """Winner-selection gates for A/B tests."""

    min_sample_size: int = 50
    min_score_difference: float = 5.0
    default_traffic_split: float = 0.5

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ABTestPolicy:
        return cls(**data)


@dataclass
class SwarmPolicy:
    batch_size: int = 10
    task_timeout_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SwarmPolicy:
        return cls(**data)


@dataclass
class LLMSettings:
    """Models used for calls the pipeline initiates itself."""

    judge_model: str = "claude-3-5-haiku-20241022"
    rewrite_model: str = "claude-3-5-sonnet-20241022"
    judge_temperature: float = 0.1
    rewrite_temperature: float = 0.5
    max_tokens: int = 2000
    api_key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("api_key")
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LLMSettings:
        return cls(**data)


@dataclass
class PipelineConfig:
    """Top-level configuration aggregating every stage's policy."""

    evaluation: EvaluationPolicy = field(default_factory=EvaluationPolicy)
    optimization: OptimizationPolicy = field(default_factory=OptimizationPolicy)
    ab_test: ABTestPolicy = field(default_factory=ABTestPolicy)
    swarm: SwarmPolicy = field(default_factory=SwarmPolicy)
    llm: LLMSettings = field(default_factory=LLMSettings)
    storage_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "evaluation": self.evaluation.to_dict(),
            "optimization": self.optimization.to_dict(),
            "ab_test": self.ab_test.to_dict(),
            "swarm": self.swarm.to_dict(),
            "llm": self.llm.to_dict(),
            "storage_path": self.storage_path,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineConfig:
        return cls(
            evaluation=EvaluationPolicy.from_dict(data.get("evaluation", {})),
            optimization=OptimizationPolicy.from_dict(data.get("optimization", {})),
            ab_test=ABTestPolicy.from_dict(data.get("ab_test", {})),
            swarm=SwarmPolicy.from_dict(data.get("swarm", {})),
            llm=LLMSettings.from_dict(data.get("llm", {})),
            storage_path=data.get("storage_path"),
        )

    @classmethod
    def from_env(cls, dotenv_path: str | None = None) -> PipelineConfig:
        """Build a config from ``AGENTLOOP_*`` environment variables.

        Unset variables keep their defaults.
        """
        load_dotenv(dotenv_path)
        config = cls()

        evaluation = config.evaluation
        evaluation.l2_aggregation = L2Aggregation(
            os.getenv("AGENTLOOP_L2_AGGREGATION", evaluation.l2_aggregation.value)
        )
        evaluation.l2_min_score = _env_int("AGENTLOOP_L2_MIN_SCORE", evaluation.l2_min_score)
        evaluation.auto_send_threshold = _env_int(
            "AGENTLOOP_AUTO_SEND_THRESHOLD", evaluation.auto_send_threshold
        )
        evaluation.min_confidence = _env_float(
            "AGENTLOOP_MIN_CONFIDENCE", evaluation.min_confidence
        )
        evaluation.require_approval = _env_bool(
            "AGENTLOOP_REQUIRE_APPROVAL", evaluation.require_approval
        )
        evaluation.l3_trigger = L3Trigger(
            os.getenv("AGENTLOOP_L3_TRIGGER", evaluation.l3_trigger.value)
        )

        config.optimization.window_days = _env_int(
            "AGENTLOOP_WINDOW_DAYS", config.optimization.window_days
        )
        config.ab_test.min_sample_size = _env_int(
            "AGENTLOOP_AB_MIN_SAMPLE_SIZE", config.ab_test.min_sample_size
        )
        config.swarm.batch_size = _env_int("AGENTLOOP_SWARM_BATCH_SIZE", config.swarm.batch_size)

        config.llm.judge_model = os.getenv("AGENTLOOP_JUDGE_MODEL", config.llm.judge_model)
        config.llm.rewrite_model = os.getenv("AGENTLOOP_REWRITE_MODEL", config.llm.rewrite_model)
        config.llm.api_key = os.getenv("AGENTLOOP_LLM_API_KEY") or os.getenv("ANTHROPIC_API_KEY")

        config.storage_path = os.getenv("AGENTLOOP_STORAGE_PATH", config.storage_path)
        return config


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")
