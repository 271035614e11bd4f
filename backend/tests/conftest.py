import json
import os
import sys
from pathlib import Path
from typing import Any, Callable, Optional, Union

import pytest


# Ensure backend modules (e.g. config.py, decision_framework) are importable even when running pytest from repo root.
BACKEND_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_DIR))

# Avoid requiring real credentials / services during import-time initialization.
os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")
os.environ.setdefault("USE_IN_MEMORY_STORE", "1")

from decision_framework.persistence import InMemoryDocumentStore  # noqa: E402


Reply = Union[str, BaseException, Callable[[str], str]]


class FakeLLMClient:
    """Scripted ``LLMClient`` keyed by agent role.

    Each role maps to a single reply or a list of replies consumed in
    order (the last one repeats).  A reply may be a string, an exception
    instance to raise, or a callable receiving the prompt.
    """

    def __init__(self, replies: Optional[dict[str, Union[Reply, list[Reply]]]] = None, default: Reply = "") -> None:
        self.replies = {role: list(r) if isinstance(r, list) else [r] for role, r in (replies or {}).items()}
        self.default = default
        self.calls: list[dict[str, Any]] = []

    async def generate(
        self,
        prompt: str,
        agent_role: str,
        memory: Optional[dict[str, Any]] = None,
        max_tokens: Optional[int] = None,
        response_format: Optional[str] = None,
    ) -> str:
        self.calls.append(
            {
                "prompt": prompt,
                "agent_role": agent_role,
                "memory": memory,
                "max_tokens": max_tokens,
                "response_format": response_format,
            }
        )
        queue = self.replies.get(agent_role)
        if queue:
            reply = queue.pop(0) if len(queue) > 1 else queue[0]
        else:
            reply = self.default
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return reply(prompt)
        return reply

    def calls_for(self, role: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["agent_role"] == role]


def agent_reply(action: str, confidence: float, reasoning: str = "", alternatives: Optional[list[str]] = None) -> str:
    return json.dumps(
        {
            "action": action,
            "confidence": confidence,
            "reasoning": reasoning or f"Recommend {action}",
            "alternativeActions": alternatives or [],
        }
    )


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


# ---------------------------------------------------------------------------
# Framework wired to the fake LLM
# ---------------------------------------------------------------------------

LEAD_STATE = {"lead": {"score": 91, "stage": "decision"}, "company": {"industry": "technology"}, "leadId": "l-1"}
DEMO_ACTIONS = ["schedule_demo", "send_case_study", "wait"]


def _agent_or_insight(prompt: str) -> str:
    if "Review these recent decisions" in prompt:
        return json.dumps({"insight": "i", "pattern": "p", "recommendation": "r", "confidence": 0.6})
    return agent_reply("schedule_demo", 0.7, alternatives=["send_case_study"])


def _explainer(prompt: str) -> str:
    if prompt.startswith("Generate a clear explanation"):
        return "Demo scheduled because the lead is hot."
    return "[]"


def make_framework(store, **settings):
    from config import FrameworkSettings
    from decision_framework.agents import EXPLAINER_ROLE
    from decision_framework.framework import DecisionFramework

    llm = FakeLLMClient({EXPLAINER_ROLE: _explainer}, default=_agent_or_insight)
    config = FrameworkSettings(retry_base_delay=0, llm_timeout=5, **settings)
    framework = DecisionFramework.create("leads", store=store, llm=llm, settings=config)
    # Exploration pins the policy's confidence below the override threshold.
    framework.policy.exploration_rate = 1.0
    return framework
