"""LLM collaborator used by agents, the debate moderator and the explainer.

``LLMClient`` is the only seam the engines depend on.  The production
implementation wraps a LangChain chat model, throttles calls through the
provider rate limiter, bounds each attempt with a timeout and retries
transient failures.  Provider exceptions surface as ``AIServiceError`` or
``RateLimitError``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional, Protocol

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from config import FrameworkSettings, get_claude_api_key, get_openai_api_key
from decision_framework.agents import role_description
from decision_framework.errors import AIServiceError, ErrorMonitor, RateLimitError
from decision_framework.rate_limiter import ProviderRateLimiter, get_rate_limiter
from decision_framework.retry import retry_with_backoff

logger = logging.getLogger(__name__)

# Conservative per-call estimate used for the TPM reservation.
_ESTIMATED_PROMPT_TOKENS = 1500
_DEFAULT_MAX_TOKENS = 1000

_JSON_INSTRUCTION = (
    "Respond with valid JSON only. Do not wrap it in markdown or add commentary."
)


class LLMClient(Protocol):
    async def generate(
        self,
        prompt: str,
        agent_role: str,
        memory: Optional[dict[str, Any]] = None,
        max_tokens: Optional[int] = None,
        response_format: Optional[str] = None,
    ) -> str:
        ...


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------

_PAIRS = {"{": "}", "[": "]"}


def extract_json_block(text: str, opener: Optional[str] = None) -> Optional[str]:
    """Return the first balanced ``{...}`` (or ``[...]``) block in *text*.

    String literals are honoured so braces inside quoted values do not
    unbalance the scan.  With *opener* set to ``"{"`` or ``"["`` only that
    kind of block is returned.
    """
    if not text:
        return None
    openers = (opener,) if opener else tuple(_PAIRS)
    start = -1
    for i, ch in enumerate(text):
        if ch in openers:
            start = i
            break
    if start < 0:
        return None

    stack: list[str] = []
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _PAIRS:
            stack.append(_PAIRS[ch])
        elif ch in ("}", "]"):
            if not stack or stack.pop() != ch:
                return None
            if not stack:
                return text[start : i + 1]
    return None


def load_json_block(text: str, opener: Optional[str] = None) -> Any:
    """Extract and decode the first JSON block; ``ValueError`` when absent or invalid."""
    block = extract_json_block(text, opener)
    if block is None:
        raise ValueError("no JSON block found in response")
    return json.loads(block)


async def generate_within(
    llm: LLMClient,
    timeout: Optional[float],
    prompt: str,
    agent_role: str,
    **kwargs: Any,
) -> str:
    """Call ``llm.generate`` bounded by *timeout* seconds.

    A timeout surfaces as ``AIServiceError`` so callers handle it with
    the same fallback as any other failed call.
    """
    try:
        return await asyncio.wait_for(llm.generate(prompt, agent_role, **kwargs), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise AIServiceError(
            f"LLM call for {agent_role} timed out after {timeout}s",
            function="generate_within",
            context={"agent_role": agent_role},
            original_error=exc,
        ) from exc


def message_text(message: AIMessage) -> str:
    content = message.content
    # Claude returns content as a list of blocks
    if isinstance(content, list):
        return " ".join(
            block.get("text", "") if isinstance(block, dict) else str(block) for block in content
        )
    return str(content)


# ---------------------------------------------------------------------------
# LangChain-backed client
# ---------------------------------------------------------------------------


def create_chat_model(provider: str, model: str, temperature: float = 0.3) -> BaseChatModel:
    """Create a chat model for the given provider/model."""
    if provider == "openai":
        return ChatOpenAI(model=model, temperature=temperature, api_key=get_openai_api_key())
    elif provider == "claude":
        from langchain_anthropic import ChatAnthropic
        return ChatAnthropic(model=model, temperature=temperature, anthropic_api_key=get_claude_api_key())
    else:
        raise ValueError(f"Unsupported LLM provider: {provider}")


def _map_provider_error(exc: Exception, provider: str) -> Exception:
    if isinstance(exc, (AIServiceError, RateLimitError)):
        return exc
    name = type(exc).__name__
    status = getattr(exc, "status_code", None)
    context = {"provider": provider, "exception": name}
    if "RateLimit" in name or status == 429:
        return RateLimitError(f"{provider} rate limit hit", function="generate", context=context, original_error=exc)
    return AIServiceError(f"{provider} call failed: {exc}", function="generate", context=context, original_error=exc)


class LangChainLLMClient:
    """``LLMClient`` backed by a LangChain chat model."""

    def __init__(
        self,
        chat_model: BaseChatModel,
        provider: str = "openai",
        *,
        timeout: float = 60.0,
        max_retries: int = 3,
        retry_base_delay: float = 0.3,
        rate_limiter: Optional[ProviderRateLimiter] = None,
        monitor: Optional[ErrorMonitor] = None,
    ) -> None:
        self.chat_model = chat_model
        self.provider = provider
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.monitor = monitor

    @classmethod
    def from_settings(
        cls, settings: FrameworkSettings, monitor: Optional[ErrorMonitor] = None
    ) -> "LangChainLLMClient":
        model = create_chat_model(settings.llm_provider, settings.llm_model, settings.llm_temperature)
        return cls(
            model,
            settings.llm_provider,
            timeout=settings.llm_timeout,
            max_retries=settings.max_retries,
            retry_base_delay=settings.retry_base_delay,
            rate_limiter=get_rate_limiter(settings.tpm_limit),
            monitor=monitor,
        )

    def _build_messages(
        self,
        prompt: str,
        agent_role: str,
        memory: Optional[dict[str, Any]],
        response_format: Optional[str],
    ) -> list:
        system = f"You are the {role_description(agent_role)}."
        if memory and (memory.get("recent_decisions") or memory.get("insights")):
            system += "\n\nYour memory of recent work:\n" + json.dumps(memory, indent=2, default=str)
        if response_format == "json":
            system += "\n\n" + _JSON_INSTRUCTION
        return [SystemMessage(content=system), HumanMessage(content=prompt)]

    async def generate(
        self,
        prompt: str,
        agent_role: str,
        memory: Optional[dict[str, Any]] = None,
        max_tokens: Optional[int] = None,
        response_format: Optional[str] = None,
    ) -> str:
        messages = self._build_messages(prompt, agent_role, memory, response_format)
        budget = max_tokens or _DEFAULT_MAX_TOKENS
        estimated = _ESTIMATED_PROMPT_TOKENS + budget
        model = self.chat_model.bind(max_tokens=budget)

        async def _attempt() -> str:
            await self.rate_limiter.acquire(self.provider, estimated)
            try:
                response = await asyncio.wait_for(model.ainvoke(messages), timeout=self.timeout)
            except asyncio.TimeoutError as exc:
                raise AIServiceError(
                    f"{self.provider} call timed out after {self.timeout:.0f}s",
                    function="generate",
                    context={"provider": self.provider, "agent_role": agent_role},
                    original_error=exc,
                ) from exc
            except Exception as exc:
                raise _map_provider_error(exc, self.provider) from exc

            usage = getattr(response, "usage_metadata", None) or {}
            actual = usage.get("total_tokens", estimated) if isinstance(usage, dict) else estimated
            self.rate_limiter.record(self.provider, actual, estimated)
            return message_text(response)

        return await retry_with_backoff(
            _attempt,
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            source="llm",
            function_name=f"generate:{agent_role}",
            monitor=self.monitor,
        )
