"""Agent roster: the closed set of agent types and their lookup tables.

``AgentType`` values are the wire names used in stored decisions.  Role
descriptions, per-decision-type defaults and lead preferences are plain
tables keyed by the enum so selection never branches on raw strings.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AgentType(str, Enum):
    STRATEGY = "strategy_agent"
    RESEARCH = "research_agent"
    QUALIFICATION = "qualification_agent"
    COMMUNICATION = "communication_agent"
    ETHICS_ADVISOR = "ethics_advisor_agent"
    RISK_ASSESSMENT = "risk_assessment_agent"
    MARKET_INTELLIGENCE = "market_intelligence_agent"
    CONTENT_STRATEGIST = "content_strategist_agent"
    CHANNEL_STRATEGIST = "channel_strategist_agent"
    TIMING_OPTIMIZATION = "timing_optimization_agent"
    PERSONALIZATION = "personalization_agent"


class CollaborationMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    HIERARCHICAL = "hierarchical"
    CONSENSUS = "consensus"


@dataclass(frozen=True)
class AgentProfile:
    title: str
    responsibility: str

    @property
    def role_description(self) -> str:
        return f"{self.title} responsible for {self.responsibility}"


AGENT_PROFILES: dict[AgentType, AgentProfile] = {
    AgentType.STRATEGY: AgentProfile(
        "Strategy Agent", "developing high-level strategies for lead generation and nurturing"
    ),
    AgentType.RESEARCH: AgentProfile(
        "Research Agent", "gathering and analyzing information about prospects and markets"
    ),
    AgentType.QUALIFICATION: AgentProfile(
        "Qualification Agent", "evaluating lead quality and potential"
    ),
    AgentType.COMMUNICATION: AgentProfile(
        "Communication Agent", "optimizing messaging and channel selection"
    ),
    AgentType.ETHICS_ADVISOR: AgentProfile(
        "Ethics Advisor Agent", "providing ethical guidance and compliance checks"
    ),
    AgentType.RISK_ASSESSMENT: AgentProfile(
        "Risk Assessment Agent", "identifying and quantifying potential risks"
    ),
    AgentType.MARKET_INTELLIGENCE: AgentProfile(
        "Market Intelligence Agent", "analyzing market trends and the competitive landscape"
    ),
    AgentType.CONTENT_STRATEGIST: AgentProfile(
        "Content Strategist Agent", "developing content strategies and recommendations"
    ),
    AgentType.CHANNEL_STRATEGIST: AgentProfile(
        "Channel Strategist Agent", "optimizing channel selection and coordination"
    ),
    AgentType.TIMING_OPTIMIZATION: AgentProfile(
        "Timing Optimization Agent", "determining optimal timing for actions"
    ),
    AgentType.PERSONALIZATION: AgentProfile(
        "Personalization Agent", "tailoring approaches to individual prospects"
    ),
}

MODERATOR_ROLE = "debate_moderator"
EXPLAINER_ROLE = "explainer"

_SUPPORT_ROLES: dict[str, str] = {
    MODERATOR_ROLE: "Debate Moderator responsible for weighing conflicting agent positions and ruling on them",
    EXPLAINER_ROLE: "Decision Explainer responsible for making automated decisions understandable to people",
}

DECISION_TYPE_AGENTS: dict[str, tuple[AgentType, ...]] = {
    "LEAD_QUALIFICATION": (
        AgentType.QUALIFICATION,
        AgentType.RESEARCH,
        AgentType.ETHICS_ADVISOR,
        AgentType.RISK_ASSESSMENT,
    ),
    "ENGAGEMENT_STRATEGY": (
        AgentType.STRATEGY,
        AgentType.COMMUNICATION,
        AgentType.MARKET_INTELLIGENCE,
        AgentType.PERSONALIZATION,
    ),
    "CONTENT_SELECTION": (
        AgentType.CONTENT_STRATEGIST,
        AgentType.PERSONALIZATION,
        AgentType.COMMUNICATION,
    ),
    "CHANNEL_SELECTION": (
        AgentType.CHANNEL_STRATEGIST,
        AgentType.COMMUNICATION,
        AgentType.MARKET_INTELLIGENCE,
    ),
    "TIMING_OPTIMIZATION": (
        AgentType.TIMING_OPTIMIZATION,
        AgentType.MARKET_INTELLIGENCE,
        AgentType.PERSONALIZATION,
    ),
    "MULTI_CHANNEL_ORCHESTRATION": (
        AgentType.STRATEGY,
        AgentType.CHANNEL_STRATEGIST,
        AgentType.TIMING_OPTIMIZATION,
        AgentType.COMMUNICATION,
    ),
    "PERSONALIZATION_STRATEGY": (
        AgentType.PERSONALIZATION,
        AgentType.CONTENT_STRATEGIST,
        AgentType.RESEARCH,
    ),
    "FOLLOW_UP_STRATEGY": (
        AgentType.STRATEGY,
        AgentType.TIMING_OPTIMIZATION,
        AgentType.COMMUNICATION,
    ),
    "CAMPAIGN_OPTIMIZATION": (
        AgentType.STRATEGY,
        AgentType.MARKET_INTELLIGENCE,
        AgentType.CONTENT_STRATEGIST,
        AgentType.CHANNEL_STRATEGIST,
    ),
}

DEFAULT_AGENTS: tuple[AgentType, ...] = (
    AgentType.STRATEGY,
    AgentType.ETHICS_ADVISOR,
    AgentType.RISK_ASSESSMENT,
)

DECISION_TYPE_LEADS: dict[str, AgentType] = {
    "LEAD_QUALIFICATION": AgentType.QUALIFICATION,
    "ENGAGEMENT_STRATEGY": AgentType.STRATEGY,
    "CONTENT_SELECTION": AgentType.CONTENT_STRATEGIST,
    "CHANNEL_SELECTION": AgentType.CHANNEL_STRATEGIST,
    "TIMING_OPTIMIZATION": AgentType.TIMING_OPTIMIZATION,
    "MULTI_CHANNEL_ORCHESTRATION": AgentType.STRATEGY,
    "PERSONALIZATION_STRATEGY": AgentType.PERSONALIZATION,
    "FOLLOW_UP_STRATEGY": AgentType.STRATEGY,
    "CAMPAIGN_OPTIMIZATION": AgentType.STRATEGY,
}


def role_description(agent_type: AgentType | str) -> str:
    if agent_type in _SUPPORT_ROLES:
        return _SUPPORT_ROLES[agent_type]
    try:
        return AGENT_PROFILES[AgentType(agent_type)].role_description
    except ValueError:
        return f"{agent_type} specialist"


def default_agents_for(decision_type: str) -> list[AgentType]:
    """Agents consulted for *decision_type* when the caller names none."""
    return list(DECISION_TYPE_AGENTS.get(decision_type) or DEFAULT_AGENTS)


def choose_lead_agent(decision_type: str, agent_types: list[AgentType]) -> AgentType:
    """Preferred lead if present, else the strategy agent, else the first agent."""
    if not agent_types:
        raise ValueError("choose_lead_agent requires at least one agent")
    preferred = DECISION_TYPE_LEADS.get(decision_type)
    if preferred is not None and preferred in agent_types:
        return preferred
    if AgentType.STRATEGY in agent_types:
        return AgentType.STRATEGY
    return agent_types[0]
