"""Application configuration helpers."""
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from urllib.parse import quote, urlparse

from dotenv import load_dotenv

# Load variables from .env into process environment as early as possible.
load_dotenv()


def _require_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Environment variable {name} must be set")
    return value


def _optional_env(name: str) -> str | None:
    value = os.getenv(name)
    return value or None


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = _optional_env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be a number, got {raw!r}") from exc


def _env_int(name: str, default: int) -> int:
    raw = _optional_env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {raw!r}") from exc


def _encode_pg_password(conn_str: str) -> str:
    """Percent-encode the password of a postgres:// URI."""
    if not conn_str.startswith(("postgres://", "postgresql://")):
        return conn_str

    parsed = urlparse(conn_str)
    if not parsed.password:
        return conn_str

    username = quote(parsed.username or "", safe="")
    password = quote(parsed.password, safe="")
    host = parsed.hostname or ""
    netloc = f"{username}:{password}@{host}"
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    return parsed._replace(netloc=netloc).geturl()


@lru_cache(maxsize=None)
def get_pg_conn_str() -> str:
    """Return the Postgres connection string with properly encoded password."""
    return _encode_pg_password(_require_env("PG_CONN_STR"))


@lru_cache(maxsize=None)
def get_openai_api_key() -> str:
    """Ensure the OpenAI API key is configured and return it."""
    return _require_env("OPENAI_API_KEY")


@lru_cache(maxsize=None)
def get_claude_api_key() -> str:
    """Return the Anthropic Claude API key."""

    value = _optional_env("CLAUDE_API_KEY") or _optional_env("ANTHROPIC_API_KEY")
    if not value:
        raise RuntimeError("Set CLAUDE_API_KEY (or ANTHROPIC_API_KEY) to use the Claude provider")
    return value


@lru_cache(maxsize=None)
def use_in_memory_store() -> bool:
    """Return True when decisions should live in the in-process document store."""

    return _env_flag("USE_IN_MEMORY_STORE")


# ---------------------------------------------------------------------------
# Decision framework tunables
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FrameworkSettings:
    llm_provider: str = "openai"
    llm_model: str = "gpt-4o"
    llm_temperature: float = 0.3
    llm_timeout: float = 60.0
    # Both defaults are tunable, not load-bearing.
    conflict_threshold: float = 0.3
    min_rewarded_experiences: int = 10
    batch_size: int = 32
    max_retries: int = 3
    retry_base_delay: float = 0.3
    tpm_limit: int = 30_000
    reward_type: str = "balanced"
    rl_algorithm: str = "ppo"


@lru_cache(maxsize=None)
def load_settings() -> FrameworkSettings:
    """Build ``FrameworkSettings`` from ``DF_*`` environment variables."""
    defaults = FrameworkSettings()
    return FrameworkSettings(
        llm_provider=os.getenv("DF_LLM_PROVIDER", defaults.llm_provider).lower(),
        llm_model=os.getenv("DF_LLM_MODEL", defaults.llm_model),
        llm_temperature=_env_float("DF_LLM_TEMPERATURE", defaults.llm_temperature),
        llm_timeout=_env_float("DF_LLM_TIMEOUT", defaults.llm_timeout),
        conflict_threshold=_env_float("DF_CONFLICT_THRESHOLD", defaults.conflict_threshold),
        min_rewarded_experiences=_env_int("DF_MIN_REWARDED_EXPERIENCES", defaults.min_rewarded_experiences),
        batch_size=_env_int("DF_BATCH_SIZE", defaults.batch_size),
        max_retries=_env_int("DF_MAX_RETRIES", defaults.max_retries),
        retry_base_delay=_env_float("DF_RETRY_BASE_DELAY", defaults.retry_base_delay),
        tpm_limit=_env_int("DF_TPM_LIMIT", defaults.tpm_limit),
        reward_type=os.getenv("DF_REWARD_TYPE", defaults.reward_type).lower(),
        rl_algorithm=os.getenv("DF_RL_ALGORITHM", defaults.rl_algorithm).lower(),
    )
