"""Modification Proposer.

Turns a PerformanceAnalysis into typed, human-approvable proposals:

    satisfaction < low_satisfaction              -> prompt_refinement (LLM rewrite)
    satisfied, expensive and on the premium tier -> model_downgrade
    rarely used tools on an agent with many      -> remove_tool
    hallucination rate above the limit           -> add_rag
    "too_creative" complaints and a high temp    -> adjust_temperature

Proposals are persisted as ``pending``; nothing is applied here.
"""

from __future__ import annotations

import logging
from typing import Any

from agentloop.config import LLMSettings, OptimizationPolicy
from agentloop.errors import NotFoundError
from agentloop.optimization.analyzer import PerformanceAnalyzer
from agentloop.optimization.repository import AgentRepository, ProposalRepository
from agentloop.optimization.schemas import (
    AgentConfig,
    ModificationProposal,
    PerformanceAnalysis,
    ProposalType,
    SelfModificationResult,
)
from agentloop.tracing.schemas import tier_from_model

logger = logging.getLogger(__name__)

PERFORMING_WELL = "Agent is performing well. Continue monitoring performance metrics."
NO_DATA = "No runs in the analysis window. Collect more data before optimizing."

REWRITE_PROMPT = """Refine this AI agent system prompt based on performance analysis.

Current System Prompt:
{current_prompt}

Performance Issues:
- Average satisfaction: {satisfaction:.1f}/5
- Common failures: {failures}
- User complaints: {complaints}
- Hallucination rate: {hallucination_rate:.1f}%

Instructions:
1. Address the identified issues
2. Maintain the core agent purpose
3. Add specific guidelines to prevent failures
4. Be clear and actionable
5. Keep under {word_budget} words

Respond with the refined system prompt ONLY, no preamble."""


def build_rewrite_prompt(
    current_prompt: str,
    analysis: PerformanceAnalysis,
    word_budget: int = 500,
) -> str:
    return REWRITE_PROMPT.format(
        current_prompt=current_prompt or "(empty)",
        satisfaction=analysis.avg_satisfaction,
        failures=", ".join(analysis.common_failures) or "none",
        complaints=", ".join(analysis.top_complaints) or "none",
        hallucination_rate=analysis.hallucination_rate * 100,
        word_budget=word_budget,
    )


def build_recommendation(proposals: list[ModificationProposal]) -> str:
    if not proposals:
        return PERFORMING_WELL
    priority = proposals[:2]
    return (
        f"Review and approve {len(proposals)} proposed modification(s). "
        f"Priority actions: {', '.join(p.type.value for p in priority)}. "
        f"Expected impact: {'; '.join(p.impact for p in priority)}."
    )


class ModificationProposer:
    """Generates and persists modification proposals for an agent.

    ``llm_provider`` must expose ``acomplete(messages, system, max_tokens,
    temperature)`` and is only used for prompt rewrites.
    """

    def __init__(
        self,
        llm_provider: Any,
        analyzer: PerformanceAnalyzer | None = None,
        agents: AgentRepository | None = None,
        proposals: ProposalRepository | None = None,
        policy: OptimizationPolicy | None = None,
        llm_settings: LLMSettings | None = None,
    ) -> None:
        self._llm = llm_provider
        self._analyzer = analyzer
        self._agents = agents
        self._proposals = proposals
        self._policy = policy or OptimizationPolicy()
        self._llm_settings = llm_settings or LLMSettings()

    async def refine_prompt(self, current_prompt: str, analysis: PerformanceAnalysis) -> str:
        response = await self._llm.acomplete(
            messages=[
                {
                    "role": "user",
                    "content": build_rewrite_prompt(
                        current_prompt, analysis, self._policy.prompt_word_budget
                    ),
                }
            ],
            max_tokens=self._llm_settings.max_tokens,
            temperature=self._llm_settings.rewrite_temperature,
        )
        content = response.content if hasattr(response, "content") else str(response)
        refined = content.strip()
        if not refined:
            raise ValueError("Prompt rewrite returned empty text")
        return refined

    async def propose(
        self,
        agent: AgentConfig,
        analysis: PerformanceAnalysis,
    ) -> list[ModificationProposal]:
        """Build proposals for one agent; nothing is persisted."""
        policy = self._policy
        proposals: list[ModificationProposal] = []

        if analysis.avg_satisfaction < policy.low_satisfaction:
            refined = await self.refine_prompt(agent.system_prompt, analysis)
            failures = ", ".join(analysis.common_failures) or "none recorded"
            proposals.append(
                ModificationProposal(
                    agent_id=agent.agent_id,
                    type=ProposalType.PROMPT_REFINEMENT,
                    current=agent.system_prompt,
                    proposed=refined,
                    rationale=(
                        f"Current satisfaction: {analysis.avg_satisfaction:.1f}/5. "
                        f"Refined prompt addresses: {failures}"
                    ),
                    impact="Improve user satisfaction by addressing common failure modes",
                )
            )

        if (
            analysis.avg_satisfaction > policy.downgrade_min_satisfaction
            and analysis.avg_cost > policy.downgrade_min_cost
            and agent.model_tier == tier_from_model(policy.premium_tier)
        ):
            ratio = policy.downgrade_savings_ratio
            proposals.append(
                ModificationProposal(
                    agent_id=agent.agent_id,
                    type=ProposalType.MODEL_DOWNGRADE,
                    current=agent.model,
                    proposed=policy.downgrade_model,
                    rationale=(
                        f"High satisfaction ({analysis.avg_satisfaction:.1f}/5) with expensive "
                        f"model (${analysis.avg_cost:.3f}/run). A cheaper model may suffice."
                    ),
                    impact=(
                        f"Reduce cost by ~{ratio:.0%} "
                        f"(estimated ${analysis.avg_cost * (1 - ratio):.3f}/run)"
                    ),
                    estimated_savings=analysis.avg_cost * ratio * analysis.total_runs,
                )
            )

        underused = [
            t.tool_name for t in analysis.tool_usage if t.usage_rate < policy.underused_tool_rate
        ]
        if underused and len(agent.tools) > policy.min_tools_for_pruning:
            kept = [tool for tool in agent.tools if tool not in underused]
            if len(kept) < len(agent.tools):
                proposals.append(
                    ModificationProposal(
                        agent_id=agent.agent_id,
                        type=ProposalType.REMOVE_TOOL,
                        current=", ".join(agent.tools),
                        proposed=", ".join(kept),
                        rationale=(
                            f"These tools are rarely used (<{policy.underused_tool_rate:.0%}): "
                            f"{', '.join(underused)}"
                        ),
                        impact="Reduce complexity and prompt size",
                    )
                )

        if analysis.hallucination_rate > policy.max_hallucination_rate:
            knowledge = agent.knowledge
            proposals.append(
                ModificationProposal(
                    agent_id=agent.agent_id,
                    type=ProposalType.ADD_RAG,
                    current=(
                        f"Knowledge base enabled (threshold {knowledge.similarity_threshold})"
                        if knowledge and knowledge.enabled
                        else "No knowledge base"
                    ),
                    proposed=(
                        "Connect to knowledge base with "
                        f"similarity_threshold={policy.rag_similarity_threshold}"
                    ),
                    rationale=(
                        f"{analysis.hallucination_rate:.1%} of conversations show hallucination "
                        "markers. Retrieval can ground responses in facts."
                    ),
                    impact="Improve accuracy and reduce hallucinations",
                )
            )

        if (
            "too_creative" in analysis.top_complaints
            and agent.temperature > policy.temperature_ceiling
        ):
            target = max(policy.temperature_floor, agent.temperature - policy.temperature_step)
            proposals.append(
                ModificationProposal(
                    agent_id=agent.agent_id,
                    type=ProposalType.ADJUST_TEMPERATURE,
                    current=str(agent.temperature),
                    proposed=str(round(target, 2)),
                    rationale=(
                        "Users report outputs are too creative or unpredictable. "
                        "Lower temperature for more consistency."
                    ),
                    impact="More consistent, factual outputs",
                )
            )

        return proposals

    async def propose_for_agent(self, agent_id: str) -> SelfModificationResult:
        """Analyze an agent and persist any proposals as pending."""
        if self._analyzer is None or self._agents is None or self._proposals is None:
            raise RuntimeError("propose_for_agent requires an analyzer and repositories")

        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)

        logger.info(f"Analyzing agent {agent_id} for self-modification")
        analysis = self._analyzer.analyze(agent_id)

        if analysis.total_runs == 0:
            logger.info(f"Agent {agent_id} has no runs in the window, nothing to propose")
            return SelfModificationResult(
                agent_id=agent_id,
                analysis=analysis,
                recommendation=NO_DATA,
            )
        if self._analyzer.is_performing_well(analysis):
            logger.info(f"Agent {agent_id} performing well, no modifications needed")
            return SelfModificationResult(
                agent_id=agent_id,
                analysis=analysis,
                recommendation=PERFORMING_WELL,
            )

        proposals = await self.propose(agent, analysis)
        for proposal in proposals:
            self._proposals.add(proposal)

        logger.info(f"Generated {len(proposals)} modification proposal(s) for agent {agent_id}")
        return SelfModificationResult(
            agent_id=agent_id,
            analysis=analysis,
            proposals=proposals,
            recommendation=build_recommendation(proposals),
        )
