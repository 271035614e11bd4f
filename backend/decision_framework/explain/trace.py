"""Step-by-step reconstruction of how a stored decision was reached."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from decision_framework.explain.rendering import DetailLevel, format_agent_type
from decision_framework.schemas import Decision, DecisionTrace, TraceStep


def _interpolate(start: datetime, end: Optional[datetime], index: int, total: int) -> datetime:
    if end is None or total <= 1:
        return start
    return start + (end - start) * (index / (total - 1))


def build_trace_steps(
    decision: Decision,
    include_intermediate_steps: bool = True,
    detail_level: int = DetailLevel.STANDARD,
) -> list[TraceStep]:
    """Ordered steps: init, context, agents, conflicts, final decision.

    Step timestamps are spread evenly between the decision's start and
    end times.  At ``MINIMAL`` detail every ``details`` payload is dropped.
    """
    drafts: list[dict] = [
        {
            "id": "step_init",
            "type": "initialization",
            "description": f"Decision process initiated for {decision.decision_type}",
        },
        {
            "id": "step_context",
            "type": "context_processing",
            "description": "Context information processed",
            "details": (
                f"Processed context: {json.dumps(decision.context, default=str)}"
                if detail_level >= DetailLevel.DETAILED
                else None
            ),
        },
    ]

    if include_intermediate_steps:
        for i, (agent_type, contribution) in enumerate(decision.agent_contributions.items()):
            drafts.append(
                {
                    "id": f"step_agent_{i}",
                    "type": "agent_contribution",
                    "agent_type": agent_type,
                    "description": f"{format_agent_type(agent_type)} provided input",
                    "action": contribution.action,
                    "confidence": contribution.confidence,
                    "details": contribution.reasoning if detail_level >= DetailLevel.STANDARD else None,
                }
            )

        resolutions = {r.conflict_id: r for r in decision.resolutions}
        for i, conflict in enumerate(decision.conflicts):
            resolution = resolutions.get(conflict.id)
            if resolution is None:
                details = "Conflict identified"
            elif detail_level >= DetailLevel.STANDARD:
                details = resolution.reasoning
            else:
                details = resolution.resolution
            drafts.append(
                {
                    "id": f"step_conflict_{i}",
                    "type": "conflict_resolution",
                    "description": f"Resolved conflict: {conflict.description}",
                    "action": resolution.recommended_action if resolution else None,
                    "confidence": resolution.confidence if resolution else None,
                    "details": details,
                }
            )

    drafts.append(
        {
            "id": "step_decision",
            "type": "final_decision",
            "description": f"Selected action: {decision.action}",
            "action": decision.action,
            "confidence": decision.confidence,
            "details": decision.reasoning if detail_level >= DetailLevel.BRIEF else None,
        }
    )

    total = len(drafts)
    steps = []
    for index, draft in enumerate(drafts):
        if detail_level <= DetailLevel.MINIMAL:
            draft["details"] = None
        steps.append(
            TraceStep(
                timestamp=_interpolate(decision.start_time, decision.end_time, index, total),
                **draft,
            )
        )
    return steps


def build_trace(
    decision: Decision,
    include_intermediate_steps: bool = True,
    detail_level: int = DetailLevel.STANDARD,
    now: Optional[datetime] = None,
) -> DecisionTrace:
    steps = build_trace_steps(decision, include_intermediate_steps, detail_level)
    duration_ms = None
    if decision.end_time is not None:
        duration_ms = (decision.end_time - decision.start_time).total_seconds() * 1000
    extra = {"timestamp": now} if now is not None else {}
    return DecisionTrace(
        decision_id=decision.id,
        decision_type=decision.decision_type,
        action=decision.action,
        confidence=decision.confidence,
        steps=steps,
        step_count=len(steps),
        duration_ms=duration_ms,
        **extra,
    )
