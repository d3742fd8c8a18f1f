"""Model providers for out-of-band security analysis.

Every provider keeps the analysis instructions and the untrusted content
in separate roles and never offers tools to the model. Failures are raised
as :class:`ProviderError`; callers decide the fail-open policy.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

import anthropic
import httpx
import openai

from trustgate.exceptions import ProviderError
from trustgate.logging import get_logger

log = get_logger("trustgate.providers")

DEFAULT_ANTHROPIC_MODEL = "claude-sonnet-4-20250514"
DEFAULT_OPENAI_MODEL = "gpt-4o"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MAX_TOKENS = 1024

_CLI_PROVIDER_NAMES = frozenset(
    {"claude-cli", "claude-code", "claude-code-agent", "claude-code-sdk", "trustgate"}
)


@runtime_checkable
class SecurityLLMProvider(Protocol):
    """A model that answers one system prompt plus one user message."""

    async def complete(self, system_prompt: str, user_content: str) -> str:
        """Return the model's text reply."""
        ...


class AnthropicSecurityProvider:
    """Anthropic Messages API with the instructions in the ``system`` field."""

    def __init__(
        self,
        api_key: str,
        model: str | None = None,
        *,
        timeout: float = 30.0,
        client: anthropic.AsyncAnthropic | None = None,
    ) -> None:
        self._model = model or DEFAULT_ANTHROPIC_MODEL
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key, timeout=timeout)

    async def complete(self, system_prompt: str, user_content: str) -> str:
        try:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=DEFAULT_MAX_TOKENS,
                system=system_prompt,
                messages=[{"role": "user", "content": user_content}],
            )
        except anthropic.APIError as e:
            raise ProviderError(f"Anthropic API error: {e}") from e

        for block in response.content:
            if getattr(block, "type", None) == "text":
                return block.text  # type: ignore[union-attr]
        return ""


class OpenAISecurityProvider:
    """OpenAI-compatible chat completions with a separate system message."""

    def __init__(
        self,
        api_key: str,
        model: str | None = None,
        *,
        base_url: str = DEFAULT_OPENAI_BASE_URL,
        timeout: float = 30.0,
        client: openai.AsyncOpenAI | None = None,
    ) -> None:
        self._model = model or DEFAULT_OPENAI_MODEL
        self._client = client or openai.AsyncOpenAI(
            api_key=api_key, base_url=base_url, timeout=timeout
        )

    async def complete(self, system_prompt: str, user_content: str) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                max_tokens=DEFAULT_MAX_TOKENS,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_content},
                ],
            )
        except openai.OpenAIError as e:
            raise ProviderError(f"OpenAI API error: {e}") from e

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""


class OllamaSecurityProvider:
    """Local Ollama ``/api/chat`` endpoint."""

    def __init__(self, url: str, model: str, *, timeout: float = 30.0) -> None:
        self._url = url.rstrip("/")
        self._model = model
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def complete(self, system_prompt: str, user_content: str) -> str:
        client = await self._get_client()
        try:
            response = await client.post(
                f"{self._url}/api/chat",
                json={
                    "model": self._model,
                    "messages": [
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_content},
                    ],
                    "stream": False,
                    "options": {"temperature": 0.1},
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ProviderError(f"Ollama request failed: {e}") from e

        return str(response.json().get("message", {}).get("content", "")).strip()

    async def close(self) -> None:
        """Close the shared HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class ClaudeCliSecurityProvider:
    """Claude CLI in print mode with tools disabled.

    The instructions go through ``--system-prompt`` and the untrusted
    content through stdin, so the two never share one prompt string.
    """

    def __init__(self, executable: str = "claude", *, timeout: float = 30.0) -> None:
        self._executable = executable
        self._timeout = timeout

    async def complete(self, system_prompt: str, user_content: str) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._executable,
                "-p",
                "--tools",
                "",
                "--output-format",
                "text",
                "--system-prompt",
                system_prompt,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProviderError(f"Failed to run Claude CLI: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(user_content.encode("utf-8")), timeout=self._timeout
            )
        except (TimeoutError, asyncio.CancelledError):
            proc.kill()
            await proc.wait()
            raise

        if proc.returncode != 0:
            raise ProviderError(
                f"Claude CLI exited with code {proc.returncode}: "
                f"{stderr.decode('utf-8', errors='replace')[:500]}"
            )
        return stdout.decode("utf-8", errors="replace").strip()


class CallableSecurityProvider:
    """Adapts an ``async (system_prompt, user_content) -> str`` function."""

    def __init__(self, func: Callable[[str, str], Awaitable[str]]) -> None:
        self._func = func

    async def complete(self, system_prompt: str, user_content: str) -> str:
        return await self._func(system_prompt, user_content)


def is_agent_sdk_provider(provider: str | None) -> bool:
    """Return True when *provider* names the local Claude CLI."""
    if not provider:
        return False
    return provider.strip().lower() in _CLI_PROVIDER_NAMES


def resolve_security_provider(
    provider: str | None,
    *,
    anthropic_api_key: str | None = None,
    openai_api_key: str | None = None,
    openai_base_url: str | None = None,
    model: str | None = None,
    ollama_url: str | None = None,
    ollama_model: str | None = None,
    timeout: float = 30.0,
) -> SecurityLLMProvider | None:
    """Pick a provider for security analysis.

    Order: Claude CLI when *provider* names it, Ollama when *provider* is
    ``"ollama"``, then Anthropic, then OpenAI by available key.

    Returns:
        A provider, or ``None`` when nothing is configured.
    """
    if is_agent_sdk_provider(provider):
        return ClaudeCliSecurityProvider(timeout=timeout)

    if provider and provider.strip().lower() == "ollama" and ollama_url and ollama_model:
        return OllamaSecurityProvider(ollama_url, ollama_model, timeout=timeout)

    if anthropic_api_key:
        return AnthropicSecurityProvider(anthropic_api_key, model, timeout=timeout)

    if openai_api_key:
        return OpenAISecurityProvider(
            openai_api_key,
            model,
            base_url=openai_base_url or DEFAULT_OPENAI_BASE_URL,
            timeout=timeout,
        )

    log.debug("no_security_provider_configured", provider=provider)
    return None
