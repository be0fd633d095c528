from __future__ import annotations

import base64
from typing import Any

import httpx

from . import config
from .logging_utils import get_logger
from .prompting import render_template

log = get_logger(__name__)


class OpenRouterError(RuntimeError):
    pass


def build_vision_prompt(template: str, details: str | None, required_placeholders: list[str] | None = None) -> str:
    context = str(details or "").strip()
    user_context = f"**Additional context provided by user:** {context}" if context else ""
    return render_template(template, {"user_context": user_context}, required_placeholders).strip()


def image_data_uri(image: bytes, mime_type: str | None) -> str:
    mime = str(mime_type or "").strip() or "application/octet-stream"
    return f"data:{mime};base64,{base64.b64encode(image).decode('ascii')}"


async def analyze_image(
    image: bytes,
    mime_type: str | None,
    prompt: str,
    model: str | None = None,
    temperature: float | None = None,
    max_tokens: int | None = None,
    timeout_s: float = 120.0,
    *,
    api_key: str | None = None,
    base_url: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    key = api_key or config.OPENROUTER_API_KEY
    if not key:
        raise OpenRouterError("OPENROUTER_API_KEY is not configured")
    if not image:
        raise OpenRouterError("Image is empty")

    payload: dict[str, Any] = {
        "model": str(model or "").strip() or config.OPENROUTER_VISION_MODEL,
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": image_data_uri(image, mime_type)}},
                ],
            }
        ],
        "stream": False,
    }
    if temperature is not None:
        payload["temperature"] = float(temperature)
    if max_tokens:
        payload["max_tokens"] = int(max_tokens)

    url = f"{(base_url or config.OPENROUTER_BASE_URL).rstrip('/')}/chat/completions"
    headers = {"Authorization": f"Bearer {key}"}

    log.info("OpenRouter vision request: model=%s bytes=%d", payload["model"], len(image))
    async with httpx.AsyncClient(timeout=httpx.Timeout(timeout_s), transport=transport) as client:
        try:
            resp = await client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
        except httpx.TimeoutException as e:
            raise OpenRouterError(f"OpenRouter request timed out after {timeout_s:.1f}s ({type(e).__name__}).") from e
        except httpx.HTTPError as e:
            detail = None
            if isinstance(e, httpx.HTTPStatusError):
                detail = e.response.text
            msg = str(e).strip() or repr(e)
            raise OpenRouterError(f"OpenRouter request failed ({type(e).__name__}): {msg} {detail or ''}".strip()) from e

        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise OpenRouterError(f"Unexpected OpenRouter response shape: {resp.text[:500]}") from e

    # Some providers return a list of content parts.
    if isinstance(content, list):
        content = "".join(str(p.get("text") or "") for p in content if isinstance(p, dict))
    return str(content or "")
