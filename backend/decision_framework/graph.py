"""LangGraph wiring for the consensus collaboration mode.

Graph topology::

    START -> [fan-out: run_agent per agent] -> detect_conflicts
    detect_conflicts --(no conflicts)--> integrate -> END
    detect_conflicts --(conflicts)-----> debate
    debate -> [fan-out: revise_agent per agent] -> integrate -> END

Agents are dispatched with ``Send`` so each round runs concurrently.
Contributions merge through a reducer keyed by agent type; a second-round
contribution replaces the first-round one for the same agent.
Integration always walks ``agent_types`` in order.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any, Awaitable, Callable, Optional, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Send

from decision_framework.agents import AgentType
from decision_framework.conflicts import ConflictResolver
from decision_framework.schemas import (
    AgentContribution,
    Conflict,
    Decision,
    IntegratedResult,
    Resolution,
)

logger = logging.getLogger(__name__)

RunAgent = Callable[..., Awaitable[AgentContribution]]
Integrate = Callable[[list[AgentContribution]], IntegratedResult]


def merge_contributions(
    existing: dict[str, AgentContribution] | None,
    new: dict[str, AgentContribution] | None,
) -> dict[str, AgentContribution]:
    """Reducer so parallel agent nodes each contribute their own key."""
    merged: dict[str, AgentContribution] = {}
    if existing:
        merged.update(existing)
    if new:
        merged.update(new)
    return merged


class ConsensusState(TypedDict, total=False):
    """Shared state for one consensus run.

    ``total=False`` so nodes only write the keys they care about.
    """

    decision_id: str
    decision_type: str
    context: dict[str, Any]
    constraints: dict[str, Any]
    agent_types: list[AgentType]

    contributions: Annotated[dict[str, AgentContribution], merge_contributions]
    conflicts: list[Conflict]
    resolutions: list[Resolution]

    result: IntegratedResult


def ordered_contributions(state: ConsensusState) -> list[AgentContribution]:
    contributions = state.get("contributions", {})
    return [
        contributions[AgentType(agent).value]
        for agent in state.get("agent_types", [])
        if AgentType(agent).value in contributions
    ]


def _agent_payload(state: ConsensusState, agent: AgentType, **extra: Any) -> dict[str, Any]:
    return {
        "agent_type": agent,
        "decision_type": state["decision_type"],
        "context": state.get("context", {}),
        "constraints": state.get("constraints", {}),
        **extra,
    }


def fan_out_agents(state: ConsensusState) -> list[Send]:
    """First round: one ``Send("run_agent", ...)`` per agent."""
    agents = state.get("agent_types", [])
    logger.info("Consensus round 1: dispatching %d agent(s)", len(agents))
    return [Send("run_agent", _agent_payload(state, agent)) for agent in agents]


def fan_out_revisions(state: ConsensusState) -> list[Send]:
    """Second round: every agent re-runs seeing the conflicts and resolutions."""
    agents = state.get("agent_types", [])
    logger.info("Consensus round 2: dispatching %d agent(s) after debate", len(agents))
    return [
        Send(
            "revise_agent",
            _agent_payload(
                state,
                agent,
                conflicts=state.get("conflicts", []),
                resolutions=state.get("resolutions", []),
            ),
        )
        for agent in agents
    ]


def route_after_detection(state: ConsensusState) -> str:
    return "debate" if state.get("conflicts") else "integrate"


def build_consensus_graph(
    run_agent: RunAgent,
    resolver: ConflictResolver,
    integrate_all: Integrate,
    checkpointer: Optional[Any] = None,
):
    """Build and compile the consensus graph around the given collaborators."""

    async def _run(payload: dict[str, Any]) -> dict[str, Any]:
        agent = payload["agent_type"]
        contribution = await run_agent(
            agent,
            payload["decision_type"],
            payload["context"],
            payload["constraints"],
            conflicts=payload.get("conflicts"),
            resolutions=payload.get("resolutions"),
        )
        return {"contributions": {AgentType(agent).value: contribution}}

    def detect_conflicts(state: ConsensusState) -> dict[str, Any]:
        conflicts = resolver.identify_conflicts(ordered_contributions(state))
        logger.info("Consensus: %d conflict(s) detected", len(conflicts))
        return {"conflicts": conflicts}

    async def debate(state: ConsensusState) -> dict[str, Any]:
        snapshot = Decision(
            id=state.get("decision_id") or "consensus",
            decision_type=state["decision_type"],
            context=state.get("context", {}),
            constraints=state.get("constraints", {}),
            agent_types=state.get("agent_types", []),
            agent_contributions={
                AgentType(c.agent_type).value: c for c in ordered_contributions(state)
            },
        )
        resolutions = await resolver.resolve_conflicts_through_debate(state.get("conflicts", []), snapshot)
        return {"resolutions": resolutions}

    def integrate(state: ConsensusState) -> dict[str, Any]:
        return {"result": integrate_all(ordered_contributions(state))}

    builder = StateGraph(ConsensusState)

    builder.add_node("run_agent", _run)
    builder.add_node("detect_conflicts", detect_conflicts)
    builder.add_node("debate", debate)
    builder.add_node("revise_agent", _run)
    builder.add_node("integrate", integrate)

    builder.add_conditional_edges(START, fan_out_agents, ["run_agent"])
    builder.add_edge("run_agent", "detect_conflicts")
    builder.add_conditional_edges(
        "detect_conflicts",
        route_after_detection,
        {"debate": "debate", "integrate": "integrate"},
    )
    builder.add_conditional_edges("debate", fan_out_revisions, ["revise_agent"])
    builder.add_edge("revise_agent", "integrate")
    builder.add_edge("integrate", END)

    return builder.compile(checkpointer=checkpointer)
