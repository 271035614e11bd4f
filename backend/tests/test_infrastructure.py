"""Tests for errors and monitoring, retries, the TPM limiter, the document store and the LLM client."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

import config
from decision_framework.errors import (
    ERROR_ALERTS,
    ERROR_LOGS,
    ERROR_METRICS,
    AIServiceError,
    DatabaseError,
    ErrorMonitor,
    ErrorType,
    NotFoundError,
    RateLimitError,
    Severity,
    UnknownError,
    ValidationError,
    is_transient,
    wrap_error,
)
from decision_framework.llm import LangChainLLMClient, message_text
from decision_framework.persistence import InMemoryDocumentStore, create_store
from decision_framework.rate_limiter import ProviderRateLimiter
from decision_framework.retry import backoff_delay, retry_with_backoff


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------


class TestErrors:
    def test_public_dict_hides_internals(self):
        original = KeyError("secret")
        error = DatabaseError("db down", function="get", context={"dsn": "postgres://x"}, original_error=original)
        public = error.to_public_dict()
        assert public == {"error_id": error.error_id, "type": "DATABASE_ERROR", "message": "db down"}
        assert error.error_id.startswith("err_")

    def test_severity_defaults(self):
        assert DatabaseError("x").severity is Severity.CRITICAL
        assert AIServiceError("x").severity is Severity.ERROR
        assert ValidationError("x").severity is Severity.WARNING
        assert ValidationError("x", context={"user_impact": "high"}).severity is Severity.CRITICAL

    def test_retryable_classes(self):
        assert is_transient(AIServiceError("x"))
        assert is_transient(DatabaseError("x"))
        assert is_transient(RateLimitError("x"))
        assert not is_transient(ValidationError("x"))
        assert not is_transient(NotFoundError("x"))
        assert not is_transient(RuntimeError("x"))

    def test_wrap_error(self):
        wrapped = wrap_error(RuntimeError("boom"), function="f")
        assert isinstance(wrapped, UnknownError)
        assert wrapped.original_error.args == ("boom",)
        existing = ValidationError("bad")
        assert wrap_error(existing, function="f") is existing

    def test_error_ids_are_unique(self):
        assert len({UnknownError("x").error_id for _ in range(50)}) == 50


class TestErrorMonitor:
    @pytest.mark.asyncio
    async def test_log_error_persists_record_and_metrics(self, store):
        monitor = ErrorMonitor(store)
        error_id = await monitor.log_error(AIServiceError("timeout"), "orchestrator", "run_agent", {"agent": "a"})

        record = await store.get(ERROR_LOGS, error_id)
        assert record["type"] == "AI_SERVICE_ERROR"
        assert record["source"] == "orchestrator"
        assert record["context"] == {"agent": "a"}

        today = datetime.now(timezone.utc).date().isoformat()
        metrics = await store.get(ERROR_METRICS, f"orchestrator_{today}")
        assert metrics["total"] == 1
        assert metrics["by_type"] == {"AI_SERVICE_ERROR": 1}
        assert await store.query(ERROR_ALERTS) == []

    @pytest.mark.asyncio
    async def test_critical_errors_raise_alerts(self, store):
        monitor = ErrorMonitor(store)
        error_id = await monitor.log_error(DatabaseError("db down"), "policy_engine", "save")
        alert = await store.get(ERROR_ALERTS, error_id)
        assert alert["status"] == "new"
        assert alert["severity"] == "CRITICAL"

    @pytest.mark.asyncio
    async def test_foreign_exceptions_are_wrapped(self, store):
        error_id = await ErrorMonitor(store).log_error(ValueError("odd"), "api", "handler")
        assert (await store.get(ERROR_LOGS, error_id))["type"] == "UNKNOWN_ERROR"

    @pytest.mark.asyncio
    async def test_statistics(self, store):
        monitor = ErrorMonitor(store)
        await monitor.log_error(AIServiceError("a"), "orchestrator", "run_agent")
        await monitor.log_error(AIServiceError("b"), "orchestrator", "run_agent")
        await monitor.log_error(ValidationError("c"), "api", "create")

        stats = await monitor.get_error_statistics()
        assert stats["total_errors"] == 3
        assert stats["by_type"] == {"AI_SERVICE_ERROR": 2, "VALIDATION_ERROR": 1}
        assert stats["by_source"] == {"orchestrator": 2, "api": 1}
        assert stats["by_severity"] == {"ERROR": 2, "WARNING": 1}
        assert sum(stats["by_day"].values()) == 3

        filtered = await monitor.get_error_statistics(source="api")
        assert filtered["total_errors"] == 1
        by_type = await monitor.get_error_statistics(error_type=ErrorType.AI_SERVICE_ERROR)
        assert by_type["total_errors"] == 2

    @pytest.mark.asyncio
    async def test_without_store_only_logs(self):
        monitor = ErrorMonitor()
        assert (await monitor.log_error(AIServiceError("x"), "s", "f")).startswith("err_")
        assert (await monitor.get_error_statistics())["total_errors"] == 0

    @pytest.mark.asyncio
    async def test_monitor_store_failure_is_swallowed(self, store, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("store down")

        monkeypatch.setattr(store, "set", broken)
        error_id = await ErrorMonitor(store).log_error(DatabaseError("db"), "s", "f")
        assert error_id.startswith("err_")


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


class TestRetry:
    def test_backoff_delay_grows_and_caps(self):
        assert 1.0 <= backoff_delay(0, 1.0) <= 1.2
        assert 4.0 <= backoff_delay(2, 1.0) <= 4.8
        assert backoff_delay(10, 1.0, max_delay=8.0) == 8.0

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self):
        fn = AsyncMock(side_effect=[AIServiceError("a"), DatabaseError("b"), "ok"])
        assert await retry_with_backoff(fn, max_retries=3, base_delay=0) == "ok"
        assert fn.await_count == 3

    @pytest.mark.asyncio
    async def test_permanent_errors_fail_fast(self):
        fn = AsyncMock(side_effect=ValidationError("bad input"))
        monitor = MagicMock(log_error=AsyncMock())
        with pytest.raises(ValidationError):
            await retry_with_backoff(fn, max_retries=3, base_delay=0, monitor=monitor, source="s", function_name="f")
        assert fn.await_count == 1
        monitor.log_error.assert_awaited_once()
        assert monitor.log_error.await_args.args[3]["retry_exhausted"] is False

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_last_error(self):
        fn = AsyncMock(side_effect=AIServiceError("down"))
        monitor = MagicMock(log_error=AsyncMock())
        with pytest.raises(AIServiceError):
            await retry_with_backoff(fn, max_retries=2, base_delay=0, monitor=monitor, context={"k": "v"})
        assert fn.await_count == 2
        context = monitor.log_error.await_args.args[3]
        assert context == {"k": "v", "retry_attempt": 2, "retry_exhausted": True}


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------


class TestProviderRateLimiter:
    @pytest.mark.asyncio
    async def test_reservations_share_the_window(self):
        now = [0.0]
        limiter = ProviderRateLimiter(tpm_limit=100, clock=lambda: now[0], poll_interval=0)
        await limiter.acquire("openai", 60)
        assert limiter.window_total("openai") == 60

        waiting = asyncio.create_task(limiter.acquire("openai", 60))
        for _ in range(5):
            await asyncio.sleep(0)
        assert not waiting.done()

        # other providers are independent
        await limiter.acquire("claude", 60)

        now[0] = 61.0
        await asyncio.wait_for(waiting, timeout=1)
        assert limiter.window_total("openai") == 60

    @pytest.mark.asyncio
    async def test_oversized_request_is_clamped(self):
        limiter = ProviderRateLimiter(tpm_limit=100, clock=lambda: 0.0, poll_interval=0)
        await asyncio.wait_for(limiter.acquire("openai", 500), timeout=1)
        assert limiter.window_total("openai") == 100

    @pytest.mark.asyncio
    async def test_record_corrects_reservation(self):
        limiter = ProviderRateLimiter(tpm_limit=1000, clock=lambda: 0.0)
        await limiter.acquire("openai", 600)
        limiter.record("openai", 250, 600)
        assert limiter.window_total("openai") == 250


# ---------------------------------------------------------------------------
# Document store
# ---------------------------------------------------------------------------


class TestInMemoryDocumentStore:
    @pytest.mark.asyncio
    async def test_set_get_returns_copies(self, store):
        data = {"a": {"b": 1}}
        await store.set("c", "1", data)
        data["a"]["b"] = 2
        doc = await store.get("c", "1")
        assert doc["a"] == {"b": 1}
        assert "updated_at" in doc
        doc["a"]["b"] = 3
        assert (await store.get("c", "1"))["a"] == {"b": 1}
        assert await store.get("c", "missing") is None

    @pytest.mark.asyncio
    async def test_update_requires_existing_document(self, store):
        with pytest.raises(NotFoundError):
            await store.update("c", "nope", {"x": 1})
        await store.set("c", "1", {"x": 1, "y": 2})
        await store.update("c", "1", {"x": 5})
        doc = await store.get("c", "1")
        assert (doc["x"], doc["y"]) == (5, 2)

    @pytest.mark.asyncio
    async def test_increment_creates_nested_counters(self, store):
        await store.increment("m", "day", "by_type.AI", 1)
        await store.increment("m", "day", "by_type.AI", 2)
        await store.increment("m", "day", "total")
        doc = await store.get("m", "day")
        assert doc["by_type"] == {"AI": 3}
        assert doc["total"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self, store):
        await asyncio.gather(*(store.increment("m", "d", "n") for _ in range(50)))
        assert (await store.get("m", "d"))["n"] == 50

    @pytest.mark.asyncio
    async def test_array_union(self, store):
        with pytest.raises(NotFoundError):
            await store.array_union("c", "nope", "tags", ["a"])
        await store.set("c", "1", {"tags": ["a"]})
        await store.array_union("c", "1", "tags", ["a", "b"])
        await store.array_union("c", "1", "tags", ["b", "c"])
        assert (await store.get("c", "1"))["tags"] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_query_by_equality(self, store):
        await store.set("c", "1", {"kind": "x", "n": 1})
        await store.set("c", "2", {"kind": "y", "n": 1})
        await store.set("c", "3", {"kind": "x", "n": 2})
        assert sorted(d["n"] for d in await store.query("c", kind="x")) == [1, 2]
        assert len(await store.query("c")) == 3
        assert await store.query("other") == []

    def test_create_store_uses_memory_flag(self):
        assert isinstance(create_store(), InMemoryDocumentStore)


# ---------------------------------------------------------------------------
# LLM client
# ---------------------------------------------------------------------------


class RateLimitExceeded(Exception):
    """Stand-in for a provider SDK's rate-limit exception."""


def _chat_model(ainvoke: AsyncMock) -> MagicMock:
    model = MagicMock()
    model.bind.return_value = MagicMock(ainvoke=ainvoke)
    return model


def _client(model, **kwargs) -> LangChainLLMClient:
    return LangChainLLMClient(
        model,
        "openai",
        retry_base_delay=0,
        rate_limiter=ProviderRateLimiter(tpm_limit=1_000_000),
        **kwargs,
    )


def _ai_message(text: str) -> AIMessage:
    return AIMessage(content=text, usage_metadata={"input_tokens": 10, "output_tokens": 5, "total_tokens": 15})


class TestLangChainLLMClient:
    @pytest.mark.asyncio
    async def test_generate_builds_messages_and_returns_text(self):
        ainvoke = AsyncMock(return_value=_ai_message('{"action": "a"}'))
        model = _chat_model(ainvoke)
        client = _client(model)

        text = await client.generate(
            "Decide.",
            "strategy_agent",
            memory={"recent_decisions": [{"decision_type": "X"}], "insights": []},
            max_tokens=321,
            response_format="json",
        )

        assert text == '{"action": "a"}'
        model.bind.assert_called_once_with(max_tokens=321)
        system, human = ainvoke.await_args.args[0]
        assert isinstance(system, SystemMessage)
        assert isinstance(human, HumanMessage)
        assert "Strategy Agent responsible for" in system.content
        assert "memory of recent work" in system.content
        assert "valid JSON only" in system.content
        assert human.content == "Decide."

    @pytest.mark.asyncio
    async def test_empty_memory_is_not_sent(self):
        ainvoke = AsyncMock(return_value=_ai_message("ok"))
        await _client(_chat_model(ainvoke)).generate("p", "explainer", memory={"recent_decisions": [], "insights": []})
        system = ainvoke.await_args.args[0][0]
        assert "memory" not in system.content
        assert "JSON" not in system.content

    @pytest.mark.asyncio
    async def test_provider_errors_are_retried_then_mapped(self):
        ainvoke = AsyncMock(side_effect=RuntimeError("500 from provider"))
        with pytest.raises(AIServiceError):
            await _client(_chat_model(ainvoke), max_retries=2).generate("p", "strategy_agent")
        assert ainvoke.await_count == 2

    @pytest.mark.asyncio
    async def test_rate_limit_then_success(self):
        ainvoke = AsyncMock(side_effect=[RateLimitExceeded("slow down"), _ai_message("ok")])
        assert await _client(_chat_model(ainvoke)).generate("p", "strategy_agent") == "ok"
        assert ainvoke.await_count == 2

    @pytest.mark.asyncio
    async def test_rate_limit_maps_to_rate_limit_error(self):
        ainvoke = AsyncMock(side_effect=RateLimitExceeded("slow down"))
        with pytest.raises(RateLimitError):
            await _client(_chat_model(ainvoke), max_retries=1).generate("p", "strategy_agent")

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow(messages):
            await asyncio.sleep(1)
            return _ai_message("late")

        with pytest.raises(AIServiceError):
            await _client(_chat_model(AsyncMock(side_effect=slow)), timeout=0.01, max_retries=1).generate(
                "p", "strategy_agent"
            )

    def test_message_text_joins_content_blocks(self):
        message = AIMessage(content=[{"type": "text", "text": "a"}, {"type": "text", "text": "b"}])
        assert message_text(message) == "a b"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestConfig:
    def test_defaults(self):
        settings = config.FrameworkSettings()
        assert settings.conflict_threshold == 0.3
        assert settings.min_rewarded_experiences == 10
        assert settings.reward_type == "balanced"
        assert settings.rl_algorithm == "ppo"

    def test_numeric_env_must_parse(self, monkeypatch):
        monkeypatch.setenv("DF_BATCH_SIZE", "lots")
        with pytest.raises(RuntimeError):
            config._env_int("DF_BATCH_SIZE", 32)
        monkeypatch.setenv("DF_BATCH_SIZE", "64")
        assert config._env_int("DF_BATCH_SIZE", 32) == 64

    def test_pg_password_is_encoded(self):
        assert config._encode_pg_password("postgresql://u:p@ss@db:5432/x") == "postgresql://u:p%40ss@db:5432/x"
