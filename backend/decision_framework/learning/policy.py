"""Numpy policy and value networks with PPO and multi-agent updates.

Both networks are single-hidden-layer MLPs::

    policy: FEATURE_DIMENSION -> HIDDEN (ReLU) -> ACTION_SPACE (softmax)
    value:  FEATURE_DIMENSION -> HIDDEN (ReLU) -> 1

Gradients are written out by hand and applied with Adam.  ``PolicyModel``
objects are treated as values: ``train_*`` helpers mutate the model they
are handed, so callers that need readers to keep seeing the old weights
train a ``copy()`` and swap it in afterwards.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Sequence

import numpy as np

from decision_framework.agents import AgentType
from decision_framework.schemas import FEATURE_DIMENSION, Experience

logger = logging.getLogger(__name__)

ACTION_SPACE = 20
HIDDEN = 64
LEARNING_RATE = 1e-3
CLIP_EPSILON = 0.2
ENTROPY_COEF = 0.01
PPO_EPOCHS = 4
_LOG_EPS = 1e-10

Params = dict[str, np.ndarray]


class LearningAlgorithm(str, Enum):
    PPO = "ppo"
    DQN = "dqn"
    SAC = "sac"
    MARL_VDN = "marl_vdn"
    MARL_QMIX = "marl_qmix"

    @property
    def is_multi_agent(self) -> bool:
        return self.value.startswith("marl_")


# One policy/value pair per agent id in the multi-agent variants.
MARL_AGENT_IDS: tuple[str, ...] = tuple(a.value for a in list(AgentType)[:7])


# ---------------------------------------------------------------------------
# MLP primitives
# ---------------------------------------------------------------------------


def init_mlp(rng: np.random.Generator, n_in: int, n_hidden: int, n_out: int) -> Params:
    """He-initialised weights, zero biases."""
    return {
        "W1": rng.normal(0.0, np.sqrt(2.0 / n_in), size=(n_in, n_hidden)),
        "b1": np.zeros(n_hidden),
        "W2": rng.normal(0.0, np.sqrt(2.0 / n_hidden), size=(n_hidden, n_out)),
        "b2": np.zeros(n_out),
    }


def _hidden(params: Params, x: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    z1 = x @ params["W1"] + params["b1"]
    return z1, np.maximum(z1, 0.0)


def softmax(logits: np.ndarray) -> np.ndarray:
    shifted = logits - logits.max(axis=-1, keepdims=True)
    exp = np.exp(shifted)
    return exp / exp.sum(axis=-1, keepdims=True)


def policy_forward(params: Params, x: np.ndarray) -> np.ndarray:
    _, h = _hidden(params, x)
    return softmax(h @ params["W2"] + params["b2"])


def value_forward(params: Params, x: np.ndarray) -> np.ndarray:
    _, h = _hidden(params, x)
    return (h @ params["W2"] + params["b2"]).reshape(-1)


def _backprop(params: Params, x: np.ndarray, grad_out: np.ndarray) -> Params:
    """Gradients of the loss w.r.t. every parameter given dLoss/dOutput."""
    z1, h = _hidden(params, x)
    grad_h = grad_out @ params["W2"].T
    grad_z1 = grad_h * (z1 > 0)
    return {
        "W1": x.T @ grad_z1,
        "b1": grad_z1.sum(axis=0),
        "W2": h.T @ grad_out,
        "b2": grad_out.sum(axis=0),
    }


class Adam:
    """Adam optimiser over a dict of numpy parameters."""

    def __init__(
        self,
        learning_rate: float = LEARNING_RATE,
        beta1: float = 0.9,
        beta2: float = 0.999,
        epsilon: float = 1e-8,
    ) -> None:
        self.learning_rate = learning_rate
        self.beta1 = beta1
        self.beta2 = beta2
        self.epsilon = epsilon
        self.m: Params = {}
        self.v: Params = {}
        self.t = 0

    def step(self, params: Params, grads: Params) -> None:
        self.t += 1
        for name, grad in grads.items():
            m = self.m.get(name, np.zeros_like(grad))
            v = self.v.get(name, np.zeros_like(grad))
            m = self.beta1 * m + (1 - self.beta1) * grad
            v = self.beta2 * v + (1 - self.beta2) * grad ** 2
            self.m[name], self.v[name] = m, v

            m_hat = m / (1 - self.beta1 ** self.t)
            v_hat = v / (1 - self.beta2 ** self.t)
            params[name] = params[name] - self.learning_rate * m_hat / (np.sqrt(v_hat) + self.epsilon)

    def to_dict(self) -> dict[str, Any]:
        return {
            "t": self.t,
            "m": {k: v.tolist() for k, v in self.m.items()},
            "v": {k: v.tolist() for k, v in self.v.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Adam":
        optimizer = cls()
        optimizer.t = int(data.get("t", 0))
        optimizer.m = {k: np.asarray(v, dtype=np.float64) for k, v in data.get("m", {}).items()}
        optimizer.v = {k: np.asarray(v, dtype=np.float64) for k, v in data.get("v", {}).items()}
        return optimizer


# ---------------------------------------------------------------------------
# Policy/value pair
# ---------------------------------------------------------------------------


@dataclass
class ActorCritic:
    policy: Params
    value: Params
    policy_optimizer: Adam = field(default_factory=Adam)
    value_optimizer: Adam = field(default_factory=Adam)

    @classmethod
    def create(cls, rng: np.random.Generator) -> "ActorCritic":
        return cls(
            policy=init_mlp(rng, FEATURE_DIMENSION, HIDDEN, ACTION_SPACE),
            value=init_mlp(rng, FEATURE_DIMENSION, HIDDEN, 1),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy": {k: v.tolist() for k, v in self.policy.items()},
            "value": {k: v.tolist() for k, v in self.value.items()},
            "policy_optimizer": self.policy_optimizer.to_dict(),
            "value_optimizer": self.value_optimizer.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ActorCritic":
        def _params(raw: dict[str, Any]) -> Params:
            return {k: np.asarray(v, dtype=np.float64) for k, v in raw.items()}

        return cls(
            policy=_params(data["policy"]),
            value=_params(data["value"]),
            policy_optimizer=Adam.from_dict(data.get("policy_optimizer", {})),
            value_optimizer=Adam.from_dict(data.get("value_optimizer", {})),
        )


def _policy_gradient(
    probs: np.ndarray,
    actions: np.ndarray,
    advantages: np.ndarray,
    old_action_probs: Optional[np.ndarray],
    entropy_coef: float,
    clip_epsilon: float,
) -> np.ndarray:
    """dLoss/dLogits for the clipped (or plain) policy-gradient objective."""
    n = probs.shape[0]
    one_hot = np.zeros_like(probs)
    one_hot[np.arange(n), actions] = 1.0
    score = one_hot - probs  # d log p_a / d logits

    if old_action_probs is None:
        # plain advantage-weighted policy gradient: -mean(A * log p_a)
        grad = -(advantages[:, None] * score) / n
    else:
        ratio = probs[np.arange(n), actions] / np.maximum(old_action_probs, _LOG_EPS)
        active = np.where(advantages >= 0, ratio <= 1 + clip_epsilon, ratio >= 1 - clip_epsilon)
        grad = -((advantages * ratio * active)[:, None] * score) / n

    log_probs = np.log(probs + _LOG_EPS)
    entropy = -(probs * log_probs).sum(axis=1, keepdims=True)
    # minus the entropy bonus: d(-c * mean H)/dlogits
    grad += entropy_coef * probs * (log_probs + entropy) / n
    return grad


def train_policy(
    pair: ActorCritic,
    states: np.ndarray,
    actions: np.ndarray,
    advantages: np.ndarray,
    *,
    clipped: bool = True,
    epochs: int = PPO_EPOCHS,
    clip_epsilon: float = CLIP_EPSILON,
    entropy_coef: float = ENTROPY_COEF,
) -> None:
    old_action_probs = None
    if clipped:
        old_action_probs = policy_forward(pair.policy, states)[np.arange(len(actions)), actions]
    for _ in range(epochs if clipped else 1):
        probs = policy_forward(pair.policy, states)
        grad = _policy_gradient(probs, actions, advantages, old_action_probs, entropy_coef, clip_epsilon)
        pair.policy_optimizer.step(pair.policy, _backprop(pair.policy, states, grad))


def train_value(pair: ActorCritic, states: np.ndarray, targets: np.ndarray) -> float:
    """One MSE step of the value network towards *targets*; returns the loss."""
    predictions = value_forward(pair.value, states)
    error = predictions - targets
    grad = (2.0 * error / len(targets)).reshape(-1, 1)
    pair.value_optimizer.step(pair.value, _backprop(pair.value, states, grad))
    return float(np.mean(error ** 2))


# ---------------------------------------------------------------------------
# Policy model
# ---------------------------------------------------------------------------


def _batch(experiences: Sequence[Experience]) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    states = np.asarray([e.state_features for e in experiences], dtype=np.float64)
    actions = np.asarray([e.action_index for e in experiences], dtype=np.int64)
    rewards = np.asarray([e.reward for e in experiences], dtype=np.float64)
    return states, actions, rewards


class PolicyModel:
    """Versioned weights for one learning context."""

    def __init__(
        self,
        algorithm: LearningAlgorithm | str = LearningAlgorithm.PPO,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        self.algorithm = LearningAlgorithm(algorithm)
        self.version = 0
        rng = rng or np.random.default_rng()
        self.single: Optional[ActorCritic] = None
        self.agents: dict[str, ActorCritic] = {}
        if self.algorithm.is_multi_agent:
            self.agents = {agent_id: ActorCritic.create(rng) for agent_id in MARL_AGENT_IDS}
        else:
            self.single = ActorCritic.create(rng)

    def copy(self) -> "PolicyModel":
        return copy.deepcopy(self)

    def action_probabilities(self, features: np.ndarray) -> np.ndarray:
        """Probabilities over the full action space for one state."""
        x = np.asarray(features, dtype=np.float64).reshape(1, -1)
        if self.single is not None:
            return policy_forward(self.single.policy, x)[0]
        per_agent = np.stack([policy_forward(pair.policy, x)[0] for pair in self.agents.values()])
        if self.algorithm is LearningAlgorithm.MARL_QMIX:
            return per_agent.mean(axis=0)
        return per_agent.sum(axis=0)

    def state_value(self, features: np.ndarray) -> float:
        x = np.asarray(features, dtype=np.float64).reshape(1, -1)
        if self.single is not None:
            return float(value_forward(self.single.value, x)[0])
        return float(sum(value_forward(pair.value, x)[0] for pair in self.agents.values()))

    def update(self, experiences: Sequence[Experience]) -> dict[str, float]:
        """Run one learning update in place; returns training diagnostics."""
        # candidates past the output layer have no logit to credit
        experiences = [e for e in experiences if e.action_index < ACTION_SPACE]
        if not experiences:
            return {}
        states, actions, rewards = _batch(experiences)

        if self.single is not None:
            advantages = rewards - value_forward(self.single.value, states)
            loss = train_value(self.single, states, rewards)
            train_policy(
                self.single,
                states,
                actions,
                advantages,
                clipped=self.algorithm is LearningAlgorithm.PPO,
            )
        else:
            # Value decomposition: the mixed value is the sum of agent values.
            agent_values = {aid: value_forward(pair.value, states) for aid, pair in self.agents.items()}
            mixed = np.sum(list(agent_values.values()), axis=0)
            advantages = rewards - mixed
            grad = (2.0 * (mixed - rewards) / len(rewards)).reshape(-1, 1)
            for pair in self.agents.values():
                pair.value_optimizer.step(pair.value, _backprop(pair.value, states, grad))
                train_policy(pair, states, actions, advantages)
            loss = float(np.mean(advantages ** 2))

        self.version += 1
        return {
            "value_loss": loss,
            "mean_advantage": float(np.mean(advantages)),
            "batch_size": float(len(experiences)),
        }

    # -- Serialisation -------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"algorithm": self.algorithm.value, "version": self.version}
        if self.single is not None:
            data["single"] = self.single.to_dict()
        else:
            data["agents"] = {aid: pair.to_dict() for aid, pair in self.agents.items()}
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PolicyModel":
        model = cls.__new__(cls)
        model.algorithm = LearningAlgorithm(data["algorithm"])
        model.version = int(data.get("version", 0))
        model.single = ActorCritic.from_dict(data["single"]) if "single" in data else None
        model.agents = {aid: ActorCritic.from_dict(raw) for aid, raw in data.get("agents", {}).items()}
        return model
