from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Optional, Protocol

from openai import AsyncOpenAI

from app.core.config import get_settings
from app.services.json_repair import try_parse_json

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LLMRequest:
    purpose: str
    system_prompt: str
    user_prompt: str
    temperature: float
    json_mode: bool
    timeout_ms: Optional[int] = None


@dataclass(frozen=True)
class LLMResponse:
    content: str
    provider: str
    model: str
    latency_ms: int
    attempts: int
    used_fallback: bool


class LLMProvider(Protocol):
    name: str
    model: str

    async def generate(self, req: LLMRequest) -> str:
        ...


class OpenAICompatProvider:
    def __init__(
        self,
        *,
        name: str,
        api_key: Optional[str],
        base_url: Optional[str],
        model: str,
    ) -> None:
        self.name = name
        self.model = model
        self._api_key = api_key
        self._base_url = base_url
        self._client: Optional[AsyncOpenAI] = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self._api_key, base_url=self._base_url)
        return self._client

    async def generate(self, req: LLMRequest) -> str:
        kwargs = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": req.system_prompt},
                {"role": "user", "content": req.user_prompt},
            ],
            "temperature": req.temperature,
        }
        if req.json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = await self._get_client().chat.completions.create(**kwargs)
        return response.choices[0].message.content or ""


class LLMTimeoutError(RuntimeError):
    pass


class LLMGateway:
    """Tries each provider on the route in order; the first valid answer wins."""

    def __init__(
        self,
        *,
        providers: Dict[str, LLMProvider],
        default_route: List[str],
        default_timeout_ms: Optional[int] = None,
    ) -> None:
        self.providers = providers
        self.default_route = default_route
        self.default_timeout_ms = default_timeout_ms

    async def generate(self, req: LLMRequest, *, route: Optional[List[str]] = None) -> LLMResponse:
        route = route or self.default_route
        attempts = 0
        last_err: Optional[Exception] = None

        for idx, provider_name in enumerate(route):
            attempts += 1
            provider = self.providers.get(provider_name)
            if provider is None:
                last_err = ValueError(f"Unknown provider: {provider_name}")
                continue

            timeout_ms = req.timeout_ms if req.timeout_ms is not None else self.default_timeout_ms
            t0 = time.perf_counter()
            try:
                if timeout_ms is not None:
                    content = await asyncio.wait_for(provider.generate(req), timeout=timeout_ms / 1000)
                else:
                    content = await provider.generate(req)

                if req.json_mode:
                    parsed, error = try_parse_json(content)
                    if parsed is None:
                        raise ValueError(f"LLM JSON mode returned unusable output: {error}")
            except asyncio.TimeoutError:
                last_err = LLMTimeoutError(f"Timeout provider={provider_name} purpose={req.purpose}")
                logger.warning("LLM timeout purpose=%s provider=%s", req.purpose, provider_name)
                continue
            except Exception as exc:
                last_err = exc
                logger.warning("LLM failed purpose=%s provider=%s error=%s", req.purpose, provider_name, exc)
                continue

            latency_ms = int((time.perf_counter() - t0) * 1000)
            logger.info(
                "LLM done purpose=%s provider=%s model=%s ms=%s attempts=%s",
                req.purpose,
                provider.name,
                provider.model,
                latency_ms,
                attempts,
            )
            return LLMResponse(
                content=content,
                provider=provider.name,
                model=provider.model,
                latency_ms=latency_ms,
                attempts=attempts,
                used_fallback=idx > 0,
            )

        if last_err is None:
            last_err = ValueError("LLM route is empty")
        raise last_err


@lru_cache
def get_llm_gateway() -> LLMGateway:
    settings = get_settings()
    providers: Dict[str, LLMProvider] = {
        "openai": OpenAICompatProvider(
            name="openai",
            api_key=settings.openai_api_key,
            base_url=None,
            model=settings.llm_openai_model,
        ),
    }
    if settings.deepseek_api_key:
        providers["deepseek"] = OpenAICompatProvider(
            name="deepseek",
            api_key=settings.deepseek_api_key,
            base_url="https://api.deepseek.com",
            model="deepseek-chat",
        )

    route = [settings.llm_provider.lower()]
    if settings.llm_fallback_provider and settings.llm_fallback_provider.lower() not in route:
        route.append(settings.llm_fallback_provider.lower())

    return LLMGateway(
        providers=providers,
        default_route=route,
        default_timeout_ms=settings.llm_timeout_ms,
    )
