"""Conflict detection and debate-based resolution.

Conflicts come in two kinds:
- ``action_disagreement``: two distinct actions were proposed; one
  conflict per unordered pair, listing the agents on each side.
- ``confidence_disagreement``: agents agree on an action but their
  confidences spread wider than the configured threshold.

Resolution runs one moderator call per conflict, concurrently.  A failed
or unparsable moderator answer becomes a fallback resolution recommending
manual review.
"""

from __future__ import annotations

import asyncio
import logging
from itertools import combinations
from typing import Optional, Sequence

from decision_framework.agents import MODERATOR_ROLE, AgentType
from decision_framework.errors import ErrorMonitor
from decision_framework.llm import LLMClient, generate_within
from decision_framework.parsing import fallback_resolution, resolution_from_response
from decision_framework.prompts import build_debate_prompt
from decision_framework.schemas import (
    AgentContribution,
    ConfidenceRange,
    Conflict,
    ConflictType,
    Decision,
    Resolution,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFLICT_THRESHOLD = 0.3
_DEBATE_MAX_TOKENS = 1500
# Absorbs float noise such as 0.9 - 0.6 == 0.30000000000000004.
_EPSILON = 1e-9


def group_by_action(contributions: Sequence[AgentContribution]) -> dict[str, list[AgentContribution]]:
    groups: dict[str, list[AgentContribution]] = {}
    for contribution in contributions:
        groups.setdefault(contribution.action, []).append(contribution)
    return groups


def identify_conflicts(
    contributions: Sequence[AgentContribution],
    threshold: float = DEFAULT_CONFLICT_THRESHOLD,
) -> list[Conflict]:
    """Return every action and confidence disagreement in *contributions*."""
    groups = group_by_action(contributions)
    conflicts: list[Conflict] = []

    for first, second in combinations(groups, 2):
        conflicts.append(
            Conflict(
                type=ConflictType.ACTION_DISAGREEMENT,
                description=f'Disagreement on recommended action: "{first}" vs "{second}"',
                actions=[first, second],
                agents={
                    first: [c.agent_type for c in groups[first]],
                    second: [c.agent_type for c in groups[second]],
                },
            )
        )

    for action, members in groups.items():
        if len(members) < 2:
            continue
        confidences = [c.confidence for c in members]
        low, high = min(confidences), max(confidences)
        if high - low > threshold + _EPSILON:
            conflicts.append(
                Conflict(
                    type=ConflictType.CONFIDENCE_DISAGREEMENT,
                    description=f'Significant confidence difference for action "{action}"',
                    actions=[action],
                    agents={action: [c.agent_type for c in members]},
                    confidence_range=ConfidenceRange(min=low, max=high),
                    agent_confidences={AgentType(c.agent_type).value: c.confidence for c in members},
                )
            )

    return conflicts


class ConflictResolver:
    """Detects conflicts and runs the debate round through the moderator."""

    def __init__(
        self,
        llm: LLMClient,
        *,
        threshold: float = DEFAULT_CONFLICT_THRESHOLD,
        timeout: Optional[float] = None,
        monitor: Optional[ErrorMonitor] = None,
    ) -> None:
        self.llm = llm
        self.threshold = threshold
        self.timeout = timeout
        self.monitor = monitor

    def identify_conflicts(self, contributions: Sequence[AgentContribution]) -> list[Conflict]:
        return identify_conflicts(contributions, self.threshold)

    async def resolve_conflicts_through_debate(
        self,
        conflicts: Sequence[Conflict],
        state: Decision,
    ) -> list[Resolution]:
        """One resolution per conflict, in conflict order."""
        if not conflicts:
            return []
        contributions = list(state.agent_contributions.values())
        logger.info("Debating %d conflict(s) for decision %s", len(conflicts), state.id)
        return list(
            await asyncio.gather(*(self._resolve_one(conflict, state, contributions) for conflict in conflicts))
        )

    async def _resolve_one(
        self,
        conflict: Conflict,
        state: Decision,
        contributions: list[AgentContribution],
    ) -> Resolution:
        prompt = build_debate_prompt(
            conflict, state.decision_type, state.context, state.constraints, contributions
        )
        try:
            text = await generate_within(
                self.llm,
                self.timeout,
                prompt,
                MODERATOR_ROLE,
                max_tokens=_DEBATE_MAX_TOKENS,
                response_format="json",
            )
        except Exception as exc:
            logger.warning("Moderator call failed for conflict %s", conflict.id, exc_info=True)
            if self.monitor is not None:
                await self.monitor.log_error(
                    exc, "conflict_resolver", "resolve_conflicts_through_debate", {"conflict_id": conflict.id}
                )
            return fallback_resolution(conflict, str(exc))
        return resolution_from_response(text, conflict)
