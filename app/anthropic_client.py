"""Anthropic Messages API client used for code and metadata generation."""

from __future__ import annotations

import json
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List

import httpx

from completion_relay import PREFILL_TOKENS
from app.template_render import load_prompt, render_prompt

logger = logging.getLogger("appstore.provider")

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_BASE_URL = "https://api.anthropic.com/v1"
DEFAULT_MODEL = "claude-3-haiku-20240307"

CODE_MAX_TOKENS = 4096
CODE_TEMPERATURE = 1.0
METADATA_MAX_TOKENS = 1024
METADATA_TEMPERATURE = 0.3


@dataclass
class UpstreamError(Exception):
    message: str
    status: int | None = None
    code: str = "UPSTREAM_ERROR"

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return self.message


@dataclass
class ProviderNotConfigured(UpstreamError):
    code: str = "PROVIDER_NOT_CONFIGURED"


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    description: str
    icon: str
    power: int
    cost: int
    speed: int
    label: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "power": self.power,
            "cost": self.cost,
            "speed": self.speed,
            "label": self.label,
        }


MODEL_CATALOG: Dict[str, ModelInfo] = {
    info.id: info
    for info in (
        ModelInfo("claude-3-haiku-20240307", "Claude 3 Haiku", "Fast and cost-effective for simple tasks", "⚡", 2, 1, 5),
        ModelInfo("claude-3-5-haiku-20241022", "Claude 3.5 Haiku", "Enhanced speed and intelligence", "🚀", 3, 2, 5, "latest"),
        ModelInfo("claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet", "Balanced performance and capability", "🎼", 4, 3, 4, "flagship"),
        ModelInfo("claude-sonnet-4-20250514", "Claude Sonnet 4", "Most advanced model with superior intelligence", "🧠", 5, 4, 3, "most powerful"),
        ModelInfo("claude-3-opus-20240229", "Claude 3 Opus", "Powerful model for complex tasks", "💎", 5, 5, 2),
    )
}


def model_info(model_id: str) -> ModelInfo:
    known = MODEL_CATALOG.get(model_id)
    if known:
        return known
    return ModelInfo(model_id, f"Model {model_id}", "Advanced AI model", "🤖", 3, 3, 3)


def model_recommendations(models: List[ModelInfo]) -> dict:
    if not models:
        return {"mostCostEffective": None, "mostPowerful": None}
    cheapest = min(models, key=lambda info: info.cost)
    strongest = max(models, key=lambda info: info.power)
    return {"mostCostEffective": cheapest.id, "mostPowerful": strongest.id}


def _text_message(role: str, text: str) -> dict:
    return {"role": role, "content": [{"type": "text", "text": text}]}


def build_messages_body(
    prompt: str,
    *,
    model: str | None = None,
    system: str | None = None,
    max_tokens: int = CODE_MAX_TOKENS,
    temperature: float = CODE_TEMPERATURE,
    prefill: str | None = PREFILL_TOKENS,
    stream: bool = False,
) -> dict:
    messages = [_text_message("user", prompt)]
    if prefill:
        messages.append(_text_message("assistant", prefill))
    body: Dict[str, Any] = {
        "model": model or DEFAULT_MODEL,
        "max_tokens": max_tokens,
        "temperature": temperature,
        "messages": messages,
        "stream": stream,
    }
    if system:
        body["system"] = system
    return body


def code_generation_body(prompt: str, model: str | None = None, stream: bool = True) -> dict:
    return build_messages_body(prompt, model=model, system=load_prompt("app_renderer.txt"), stream=stream)


def code_modification_body(code: str, prompt: str, model: str | None = None) -> dict:
    request = render_prompt("modify_request.j2", {"code": code, "prompt": prompt})
    return build_messages_body(request, model=model, system=load_prompt("code_modifier.txt"), stream=True)


def _first_text(payload: Any) -> str:
    content = payload.get("content") if isinstance(payload, dict) else None
    if isinstance(content, list) and content and isinstance(content[0], dict):
        text = content[0].get("text")
        if isinstance(text, str):
            return text
    raise UpstreamError(message="Provider response has no text content")


class AnthropicClient:
    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        default_model: str | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.default_model = default_model or DEFAULT_MODEL
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @classmethod
    def from_env(cls) -> "AnthropicClient":
        return cls(
            api_key=os.getenv("ANTHROPIC_API_KEY") or None,
            base_url=os.getenv("ANTHROPIC_BASE_URL") or DEFAULT_BASE_URL,
            default_model=os.getenv("ANTHROPIC_MODEL") or DEFAULT_MODEL,
            timeout=float(os.getenv("ANTHROPIC_TIMEOUT", "120")),
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict:
        if not self.api_key:
            raise ProviderNotConfigured(message="ANTHROPIC_API_KEY is not configured")
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _with_model(self, body: dict) -> dict:
        if not body.get("model"):
            body = {**body, "model": self.default_model}
        return body

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, body: dict | None = None) -> Any:
        headers = self._headers()
        try:
            resp = await self._client.request(method, self._url(path), headers=headers, json=body)
        except httpx.HTTPError as exc:
            logger.error("provider_request_failed path=%s error=%s", path, exc)
            raise UpstreamError(message=f"Request to Anthropic API failed: {exc}") from exc
        if resp.status_code >= 400:
            logger.error("provider_error path=%s status=%s body=%s", path, resp.status_code, resp.text[:500])
            raise UpstreamError(message=f"Anthropic API error: {resp.status_code}", status=resp.status_code)
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamError(message="Failed to parse Anthropic response", status=resp.status_code) from exc

    async def complete(self, body: dict) -> str:
        payload = await self._request("POST", "/messages", self._with_model({**body, "stream": False}))
        return _first_text(payload)

    async def generate_code(self, prompt: str, model: str | None = None) -> str:
        text = await self.complete(code_generation_body(prompt, model=model, stream=False))
        # the provider does not echo the seeded assistant text
        return f"{PREFILL_TOKENS}{text}"

    async def generate_metadata(self, prompt: str, model: str | None = None) -> dict:
        body = build_messages_body(
            render_prompt("app_metadata.j2", {"prompt": prompt}),
            model=model,
            max_tokens=METADATA_MAX_TOKENS,
            temperature=METADATA_TEMPERATURE,
            prefill=None,
        )
        text = await self.complete(body)
        try:
            metadata = json.loads(text.strip())
        except ValueError as exc:
            logger.error("metadata_unparsed text=%s", text[:200])
            raise UpstreamError(message="Failed to parse metadata JSON") from exc
        if not isinstance(metadata, dict):
            raise UpstreamError(message="Metadata response is not an object")
        return metadata

    async def list_models(self) -> dict:
        payload = await self._request("GET", "/models")
        raw = payload.get("data") if isinstance(payload, dict) else None
        models = [model_info(item["id"]) for item in raw or [] if isinstance(item, dict) and isinstance(item.get("id"), str)]
        models.sort(key=lambda info: (-info.power, info.name))
        return {
            "data": [info.to_dict() for info in models],
            "has_more": bool(payload.get("has_more")),
            "first_id": payload.get("first_id"),
            "last_id": payload.get("last_id"),
            "recommendations": model_recommendations(models),
        }

    @asynccontextmanager
    async def open_stream(self, body: dict) -> AsyncIterator[httpx.Response]:
        """Open a streamed /messages call; the caller checks the status and reads bytes."""
        headers = self._headers()
        request = self._client.build_request(
            "POST",
            self._url("/messages"),
            headers=headers,
            json=self._with_model({**body, "stream": True}),
        )
        resp = await self._client.send(request, stream=True)
        try:
            yield resp
        finally:
            await resp.aclose()
