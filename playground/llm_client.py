# playground/llm_client.py
"""
Model token generator.

``stream_response`` yields text chunks as the provider produces them and
reports token usage through ``on_usage(input_tokens, output_tokens)`` once the
provider tells us (it may call it more than once; the last call wins).
Closing the iterator early closes the HTTP response, which tears down the
upstream call.
"""
import json
import logging
from typing import AsyncIterator, Callable, Optional, Sequence

import httpx

from .errors import LLMError
from .settings.config import settings
from .sse import DONE_SENTINEL, FrameBuffer

logger = logging.getLogger(__name__)

UsageCallback = Callable[[int, int], None]


def _report_usage(on_usage: Optional[UsageCallback], tin, tout) -> None:
    if on_usage is not None:
        on_usage(int(tin or 0), int(tout or 0))


def _chat_messages(messages: Sequence[dict], system_prompt: Optional[str]) -> list[dict]:
    out = [{"role": "system", "content": system_prompt}] if system_prompt else []
    out.extend({"role": m["role"], "content": m["content"]} for m in messages)
    return out


async def _raise_for_status(r: httpx.Response, provider: str) -> None:
    if r.status_code >= 400:
        body = (await r.aread()).decode("utf-8", "replace")
        raise LLMError(f"{provider} returned HTTP {r.status_code}: {body[:300]}")


# ---------- ollama ----------

async def _stream_ollama(client, messages, system_prompt, model, temperature, max_tokens, on_usage):
    payload = {
        "model": model,
        "messages": _chat_messages(messages, system_prompt),
        "stream": True,
        "options": {"temperature": temperature, "num_predict": max_tokens},
    }
    async with client.stream("POST", f"{settings.OLLAMA_BASE_URL}/api/chat", json=payload) as r:
        await _raise_for_status(r, "ollama")
        async for line in r.aiter_lines():
            if not line.strip():
                continue
            try:
                data = json.loads(line)
            except ValueError:
                logger.debug("ollama: skipping non-JSON line %r", line[:120])
                continue
            if data.get("error"):
                raise LLMError(f"ollama error: {data['error']}")
            text = (data.get("message") or {}).get("content")
            if text:
                yield text
            if data.get("done"):
                _report_usage(on_usage, data.get("prompt_eval_count"), data.get("eval_count"))
                return


# ---------- anthropic ----------

async def _stream_anthropic(client, messages, system_prompt, model, temperature, max_tokens, on_usage):
    if not settings.ANTHROPIC_API_KEY:
        raise LLMError("ANTHROPIC_API_KEY is not configured")
    payload = {
        "model": model,
        "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
        "max_tokens": max_tokens,
        "temperature": temperature,
        "stream": True,
    }
    if system_prompt:
        payload["system"] = system_prompt
    headers = {
        "x-api-key": settings.ANTHROPIC_API_KEY,
        "anthropic-version": settings.ANTHROPIC_VERSION,
        "content-type": "application/json",
    }
    input_tokens = 0
    output_tokens = 0
    buf = FrameBuffer()
    async with client.stream("POST", f"{settings.ANTHROPIC_BASE_URL}/v1/messages", json=payload, headers=headers) as r:
        await _raise_for_status(r, "anthropic")
        async for chunk in r.aiter_bytes():
            for frame in buf.feed(chunk):
                try:
                    data = json.loads(frame.data)
                except ValueError:
                    continue
                kind = data.get("type")
                if kind == "message_start":
                    usage = (data.get("message") or {}).get("usage") or {}
                    input_tokens = usage.get("input_tokens", 0)
                    output_tokens = usage.get("output_tokens", 0)
                    _report_usage(on_usage, input_tokens, output_tokens)
                elif kind == "content_block_delta":
                    text = (data.get("delta") or {}).get("text")
                    if text:
                        yield text
                elif kind == "message_delta":
                    output_tokens = (data.get("usage") or {}).get("output_tokens", output_tokens)
                    _report_usage(on_usage, input_tokens, output_tokens)
                elif kind == "error":
                    raise LLMError(f"anthropic error: {(data.get('error') or {}).get('message', 'unknown')}")
                elif kind == "message_stop":
                    return


# ---------- openai ----------

async def _stream_openai(client, messages, system_prompt, model, temperature, max_tokens, on_usage):
    if not settings.OPENAI_API_KEY:
        raise LLMError("OPENAI_API_KEY is not configured")
    payload = {
        "model": model,
        "messages": _chat_messages(messages, system_prompt),
        "temperature": temperature,
        "max_tokens": max_tokens,
        "stream": True,
        "stream_options": {"include_usage": True},
    }
    headers = {"Authorization": f"Bearer {settings.OPENAI_API_KEY}"}
    buf = FrameBuffer()
    async with client.stream("POST", f"{settings.OPENAI_BASE_URL}/chat/completions", json=payload, headers=headers) as r:
        await _raise_for_status(r, "openai")
        async for chunk in r.aiter_bytes():
            for frame in buf.feed(chunk):
                if frame.data.strip() == DONE_SENTINEL:
                    return
                try:
                    data = json.loads(frame.data)
                except ValueError:
                    continue
                if data.get("error"):
                    raise LLMError(f"openai error: {data['error']}")
                for choice in data.get("choices") or []:
                    text = (choice.get("delta") or {}).get("content")
                    if text:
                        yield text
                usage = data.get("usage")
                if usage:
                    _report_usage(on_usage, usage.get("prompt_tokens"), usage.get("completion_tokens"))


_PROVIDERS = {
    "ollama": _stream_ollama,
    "anthropic": _stream_anthropic,
    "openai": _stream_openai,
}


async def stream_response(
    messages: Sequence[dict],
    system_prompt: Optional[str] = None,
    model: Optional[str] = None,
    provider: Optional[str] = None,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    on_usage: Optional[UsageCallback] = None,
) -> AsyncIterator[str]:
    provider = (provider or settings.LLM_PROVIDER).lower()
    impl = _PROVIDERS.get(provider)
    if impl is None:
        raise LLMError(f"Unknown provider: {provider}")
    model = model or settings.DEFAULT_MODEL
    temperature = settings.DEFAULT_TEMPERATURE if temperature is None else temperature
    max_tokens = max_tokens or settings.DEFAULT_MAX_TOKENS

    try:
        async with httpx.AsyncClient(timeout=settings.LLM_TIMEOUT) as client:
            async for text in impl(client, messages, system_prompt, model, temperature, max_tokens, on_usage):
                yield text
    except httpx.HTTPError as e:
        raise LLMError(f"{provider} request failed: {e}") from e


async def complete_text(
    prompt: str,
    *,
    system_prompt: Optional[str] = None,
    model: Optional[str] = None,
    provider: Optional[str] = None,
    temperature: float = 0.2,
    max_tokens: int = 400,
    on_usage: Optional[UsageCallback] = None,
) -> str:
    """Whole answer for a single user prompt (consumes ``stream_response``)."""
    parts = []
    async for text in stream_response(
        [{"role": "user", "content": prompt}],
        system_prompt=system_prompt,
        model=model,
        provider=provider,
        temperature=temperature,
        max_tokens=max_tokens,
        on_usage=on_usage,
    ):
        parts.append(text)
    out = "".join(parts).strip()
    if not out:
        raise LLMError("Empty response from model.")
    return out
