"""Pydantic schemas for the decision framework.

These models define the data exchanged between components:
- Callers submit a DecisionRequest and the orchestrator emits a Decision
- Each agent round produces one AgentContribution per agent
- The conflict resolver emits Conflict items and Resolution items
- The policy engine records Experience items and returns Recommendations
- The explainability engine produces Explanation and DecisionTrace views
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from decision_framework.agents import AgentType, CollaborationMode

FEATURE_DIMENSION = 50


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid.uuid4()}"


def dedupe(items: list[str]) -> list[str]:
    """Drop repeated entries, keeping first-seen order."""
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


# ---------------------------------------------------------------------------
# Agent collaboration
# ---------------------------------------------------------------------------


class DecisionRequest(BaseModel):
    """A caller's request for a decision."""

    # blank types are rejected by the orchestrator as a framework ValidationError
    decision_type: str
    context: dict[str, Any]
    constraints: dict[str, Any] = Field(default_factory=dict)
    agent_types: Optional[list[AgentType]] = None
    collaboration_mode: Optional[CollaborationMode] = None


class AgentContribution(BaseModel):
    """One agent's proposal for one round.  Immutable once built."""

    model_config = ConfigDict(frozen=True)

    agent_type: AgentType
    action: str
    confidence: float = Field(ge=0, le=1)
    reasoning: str = ""
    alternative_actions: list[str] = Field(default_factory=list)
    considerations: Optional[dict[str, Any]] = None
    is_error_response: bool = False

    @field_validator("alternative_actions")
    @classmethod
    def _unique_alternatives(cls, value: list[str]) -> list[str]:
        return dedupe(value)


class ConflictType(str, Enum):
    ACTION_DISAGREEMENT = "action_disagreement"
    CONFIDENCE_DISAGREEMENT = "confidence_disagreement"


class ConfidenceRange(BaseModel):
    min: float
    max: float


class Conflict(BaseModel):
    """A disagreement detected between agent contributions."""

    id: str = Field(default_factory=new_id)
    type: ConflictType
    description: str
    actions: list[str] = Field(default_factory=list)
    # action -> agents backing it (action disagreements)
    agents: dict[str, list[AgentType]] = Field(default_factory=dict)
    # confidence disagreements only
    confidence_range: Optional[ConfidenceRange] = None
    agent_confidences: dict[str, float] = Field(default_factory=dict)


class Resolution(BaseModel):
    """The moderator's ruling on one conflict."""

    conflict_id: str
    resolution: str
    reasoning: str = ""
    recommended_action: str
    confidence: float = Field(default=0.5, ge=0, le=1)
    agent_feedback: dict[str, str] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)
    is_error_response: bool = False


class IntegratedResult(BaseModel):
    """Running result of integrating contributions one at a time."""

    action: Optional[str] = None
    confidence: float = 0.0
    reasoning: str = ""
    alternative_actions: list[str] = Field(default_factory=list)
    agent_contributions: dict[str, AgentContribution] = Field(default_factory=dict)


class Decision(BaseModel):
    """Final output of one collaboration run."""

    id: str = Field(default_factory=new_id)
    decision_type: str
    context: dict[str, Any] = Field(default_factory=dict)
    constraints: dict[str, Any] = Field(default_factory=dict)
    collaboration_mode: CollaborationMode = CollaborationMode.CONSENSUS
    agent_types: list[AgentType] = Field(default_factory=list)
    action: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0, le=1)
    reasoning: str = ""
    alternative_actions: list[str] = Field(default_factory=list)
    agent_contributions: dict[str, AgentContribution] = Field(default_factory=dict)
    conflicts: list[Conflict] = Field(default_factory=list)
    resolutions: list[Resolution] = Field(default_factory=list)
    start_time: datetime = Field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    explanations: list[str] = Field(default_factory=list)
    experience_id: Optional[str] = None
    sources: dict[str, Any] = Field(default_factory=dict)


class AgentMemory(BaseModel):
    recent_decisions: list[dict[str, Any]] = Field(default_factory=list)
    insights: list[dict[str, Any]] = Field(default_factory=list)
    last_updated: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Learning
# ---------------------------------------------------------------------------


class Experience(BaseModel):
    """One (state, action, reward) record used to train the policy."""

    id: str = Field(default_factory=new_id)
    state_features: list[float]
    action: str
    action_index: int = Field(ge=0)
    context: dict[str, Any] = Field(default_factory=dict)
    reward: Optional[float] = None
    outcome: Optional[dict[str, Any]] = None
    priority: float = Field(default=1.0, ge=0)
    timestamp: datetime = Field(default_factory=utc_now)

    @field_validator("state_features")
    @classmethod
    def _fixed_length(cls, value: list[float]) -> list[float]:
        if len(value) != FEATURE_DIMENSION:
            raise ValueError(f"state_features must have {FEATURE_DIMENSION} entries, got {len(value)}")
        return value


class Recommendation(BaseModel):
    action: str
    confidence: float = Field(ge=0, le=1)
    reasoning: str
    alternative_actions: list[str] = Field(default_factory=list)
    exploration_used: bool = False
    experience_id: Optional[str] = None
    is_error_response: bool = False
    timestamp: datetime = Field(default_factory=utc_now)


class OutcomeReport(BaseModel):
    success: bool
    message: str
    exploration_rate: Optional[float] = None
    updated: bool = False
    reward: Optional[float] = None


# ---------------------------------------------------------------------------
# Explainability
# ---------------------------------------------------------------------------


class Factor(BaseModel):
    id: str
    description: str
    importance: float = Field(ge=0)
    direction: str = "positive"
    source: str


class FactorAnalysis(BaseModel):
    factors: list[Factor]
    primary_factor: Factor
    factor_count: int
    included_factor_count: int


class ConfidenceFactor(BaseModel):
    factor: str
    impact: float


class ConfidenceAnalysis(BaseModel):
    overall_confidence: float
    confidence_range: ConfidenceRange
    average_confidence: float
    std_deviation: float
    consensus_level: float
    uncertainty_level: float
    agent_confidences: dict[str, float] = Field(default_factory=dict)
    confidence_factors: list[ConfidenceFactor] = Field(default_factory=list)
    confidence_interpretation: str


class DecisionSummary(BaseModel):
    type: str
    action: Optional[str]
    confidence: float
    timestamp: Optional[datetime] = None


class Explanation(BaseModel):
    id: str = Field(default_factory=lambda: new_id("exp_"))
    decision_id: str
    audience: str
    detail_level: int
    format: str
    include_counterfactuals: bool = False
    decision: DecisionSummary
    factor_analysis: FactorAnalysis
    confidence_analysis: ConfidenceAnalysis
    explanation: str
    counterfactual_analysis: Optional[str] = None
    visual_elements: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class TraceStep(BaseModel):
    id: str
    type: str
    description: str
    timestamp: datetime
    agent_type: Optional[str] = None
    action: Optional[str] = None
    confidence: Optional[float] = None
    details: Optional[str] = None


class DecisionTrace(BaseModel):
    decision_id: str
    decision_type: str
    action: Optional[str]
    confidence: float
    steps: list[TraceStep]
    step_count: int
    duration_ms: Optional[float] = None
    timestamp: datetime = Field(default_factory=utc_now)


class DecisionResult(BaseModel):
    """What the framework facade hands back: the decision and its explanation."""

    decision: Decision
    explanation: Optional[Explanation] = None
