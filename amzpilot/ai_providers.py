"""
AI completion providers.

Every provider exposes one coroutine::

    await provider.complete(api_key, model, prompt, use_grounding) -> str

and differs only in transport and auth. Providers are selected by the
:class:`AIProvider` tag through :func:`get_provider`.

    gemini       Google Generative Language REST API, optional google_search tool
    openai       OpenAI chat completions (JSON mode)
    groq         OpenAI-compatible endpoint at api.groq.com
    openrouter   OpenAI-compatible endpoint at openrouter.ai
    anthropic    Anthropic Messages API via the official SDK, optional web search

Rate limiting and overload responses raise RateLimitedError so callers can
back off; every other failure raises AIProviderError (or
MissingCredentialError before any request is made).
"""

from __future__ import annotations

import asyncio
import logging
import os
from enum import Enum
from typing import Any, Dict, Optional

import aiohttp
import anthropic

from amzpilot.errors import AIProviderError, MissingCredentialError, RateLimitedError

logger = logging.getLogger("ai_providers")

REQUEST_TIMEOUT = 90
TEMPERATURE = 0.2
MAX_TOKENS = 4096

# Substrings in an error body that mean "slow down" rather than "broken".
RATE_LIMIT_HINTS = ("quota", "throttl", "rate limit", "resource_exhausted", "overloaded")
RATE_LIMIT_STATUSES = (429, 503, 529)


class AIProvider(str, Enum):
    GEMINI = "gemini"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GROQ = "groq"
    OPENROUTER = "openrouter"


DEFAULT_MODELS: Dict[AIProvider, str] = {
    AIProvider.GEMINI: "gemini-2.5-flash",
    AIProvider.OPENAI: "gpt-4o-mini",
    AIProvider.ANTHROPIC: "claude-sonnet-4-20250514",
    AIProvider.GROQ: "llama-3.3-70b-versatile",
    AIProvider.OPENROUTER: "openrouter/auto",
}

# Consulted when no key is configured explicitly.
API_KEY_ENV_VARS: Dict[AIProvider, str] = {
    AIProvider.GEMINI: "GEMINI_API_KEY",
    AIProvider.OPENAI: "OPENAI_API_KEY",
    AIProvider.ANTHROPIC: "ANTHROPIC_API_KEY",
    AIProvider.GROQ: "GROQ_API_KEY",
    AIProvider.OPENROUTER: "OPENROUTER_API_KEY",
}


def _is_rate_limited(status: int, body: str) -> bool:
    if status in RATE_LIMIT_STATUSES:
        return True
    lowered = (body or "").lower()
    return any(hint in lowered for hint in RATE_LIMIT_HINTS)


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class CompletionProvider:
    """Base class: key resolution plus a JSON POST helper for REST providers."""

    tag: AIProvider

    def __init__(self, session: Optional[aiohttp.ClientSession] = None) -> None:
        self._session = session

    def resolve_key(self, api_key: str) -> str:
        key = (api_key or "").strip() or os.environ.get(API_KEY_ENV_VARS[self.tag], "")
        if not key:
            raise MissingCredentialError(f"Missing API key for {self.tag.value}")
        return key

    async def complete(self, api_key: str, model: str, prompt: str, use_grounding: bool = False) -> str:
        raise NotImplementedError

    async def close(self) -> None:
        """Release provider-held clients. A session passed in is left open."""

    async def _post_json(self, url: str, headers: Dict[str, str], body: Dict[str, Any]) -> Dict[str, Any]:
        owned = self._session is None
        session = self._session or aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT),
        )
        try:
            async with session.request("POST", url, json=body, headers=headers) as resp:
                status = resp.status
                text = await resp.text()
                if status >= 400:
                    if _is_rate_limited(status, text):
                        raise RateLimitedError(
                            f"{self.tag.value} rate limited (HTTP {status})", status_code=status,
                        )
                    raise AIProviderError(
                        f"{self.tag.value} returned HTTP {status}: {text[:300]}", status_code=status,
                    )
                try:
                    return await resp.json(content_type=None)
                except ValueError as exc:
                    raise AIProviderError(f"{self.tag.value} returned a non-JSON body") from exc
        except asyncio.TimeoutError as exc:
            raise AIProviderError(
                f"{self.tag.value} request timed out after {REQUEST_TIMEOUT}s",
            ) from exc
        except aiohttp.ClientError as exc:
            raise AIProviderError(f"{self.tag.value} request failed: {exc}") from exc
        finally:
            if owned:
                await session.close()


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class GeminiProvider(CompletionProvider):
    tag = AIProvider.GEMINI
    endpoint = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    async def complete(self, api_key: str, model: str, prompt: str, use_grounding: bool = False) -> str:
        key = self.resolve_key(api_key)
        body: Dict[str, Any] = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": TEMPERATURE},
        }
        if use_grounding:
            body["tools"] = [{"google_search": {}}]
        else:
            # JSON mode cannot be combined with tools.
            body["generationConfig"]["responseMimeType"] = "application/json"

        url = self.endpoint.format(model=model or DEFAULT_MODELS[self.tag]) + f"?key={key}"
        logger.debug("Gemini request model=%s grounding=%s", model, use_grounding)
        data = await self._post_json(url, {"Content-Type": "application/json"}, body)

        candidates = data.get("candidates") or []
        if not candidates:
            return "{}"
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
        return text or "{}"


class OpenAICompatibleProvider(CompletionProvider):
    """Chat-completions transport shared by OpenAI, Groq and OpenRouter.

    None of these offer search grounding through this endpoint, so
    ``use_grounding`` is ignored.
    """

    tag = AIProvider.OPENAI
    base_url = "https://api.openai.com/v1"

    async def complete(self, api_key: str, model: str, prompt: str, use_grounding: bool = False) -> str:
        key = self.resolve_key(api_key)
        body = {
            "model": model or DEFAULT_MODELS[self.tag],
            "messages": [{"role": "user", "content": prompt}],
            "temperature": TEMPERATURE,
            "response_format": {"type": "json_object"},
        }
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {key}"}
        headers.update(self.extra_headers())
        data = await self._post_json(f"{self.base_url}/chat/completions", headers, body)

        choices = data.get("choices") or []
        if not choices:
            return "{}"
        return (choices[0].get("message") or {}).get("content") or "{}"

    def extra_headers(self) -> Dict[str, str]:
        return {}


class GroqProvider(OpenAICompatibleProvider):
    tag = AIProvider.GROQ
    base_url = "https://api.groq.com/openai/v1"


class OpenRouterProvider(OpenAICompatibleProvider):
    tag = AIProvider.OPENROUTER
    base_url = "https://openrouter.ai/api/v1"

    def extra_headers(self) -> Dict[str, str]:
        return {"X-Title": "AmzPilot"}


class AnthropicProvider(CompletionProvider):
    """Anthropic Messages API through ``anthropic.AsyncAnthropic``."""

    tag = AIProvider.ANTHROPIC
    web_search_tool = {"type": "web_search_20250305", "name": "web_search", "max_uses": 3}

    def __init__(self, session: Optional[aiohttp.ClientSession] = None) -> None:
        super().__init__(session)
        self._clients: Dict[str, anthropic.AsyncAnthropic] = {}

    def _client_for(self, key: str) -> anthropic.AsyncAnthropic:
        if key not in self._clients:
            self._clients[key] = anthropic.AsyncAnthropic(api_key=key, max_retries=0)
        return self._clients[key]

    async def close(self) -> None:
        clients, self._clients = list(self._clients.values()), {}
        for client in clients:
            await client.close()

    async def complete(self, api_key: str, model: str, prompt: str, use_grounding: bool = False) -> str:
        key = self.resolve_key(api_key)
        kwargs: Dict[str, Any] = {
            "model": model or DEFAULT_MODELS[self.tag],
            "max_tokens": MAX_TOKENS,
            "temperature": TEMPERATURE,
            "messages": [{"role": "user", "content": prompt}],
        }
        if use_grounding:
            kwargs["tools"] = [self.web_search_tool]

        try:
            response = await self._client_for(key).messages.create(**kwargs)
        except anthropic.RateLimitError as exc:
            raise RateLimitedError(f"anthropic rate limited: {exc}", status_code=429) from exc
        except anthropic.APIStatusError as exc:
            if _is_rate_limited(exc.status_code, str(exc)):
                raise RateLimitedError(
                    f"anthropic overloaded (HTTP {exc.status_code})", status_code=exc.status_code,
                ) from exc
            raise AIProviderError(f"anthropic returned HTTP {exc.status_code}: {exc}",
                                  status_code=exc.status_code) from exc
        except anthropic.APIError as exc:
            raise AIProviderError(f"anthropic request failed: {exc}") from exc

        # Grounded responses interleave tool-use blocks with the text blocks.
        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        return text or "{}"


_PROVIDER_CLASSES = {
    AIProvider.GEMINI: GeminiProvider,
    AIProvider.OPENAI: OpenAICompatibleProvider,
    AIProvider.GROQ: GroqProvider,
    AIProvider.OPENROUTER: OpenRouterProvider,
    AIProvider.ANTHROPIC: AnthropicProvider,
}


def get_provider(tag, session: Optional[aiohttp.ClientSession] = None) -> CompletionProvider:
    """Instantiate the provider implementation for *tag*."""
    return _PROVIDER_CLASSES[AIProvider(tag)](session=session)
