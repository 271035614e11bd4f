"""Reward shaping, experience replay and the trainable policy."""

from .engine import PolicyEngine
from .experience import ExperienceBuffer
from .features import extract_state_features
from .policy import LearningAlgorithm, PolicyModel
from .rewards import RewardType, calculate_reward

__all__ = [
    "PolicyEngine",
    "ExperienceBuffer",
    "extract_state_features",
    "LearningAlgorithm",
    "PolicyModel",
    "RewardType",
    "calculate_reward",
]
