from __future__ import annotations

from typing import Any

import httpx

from . import config
from .logging_utils import get_logger

log = get_logger(__name__)


class GeminiError(RuntimeError):
    pass


def _model_path(model: str | None) -> str:
    name = str(model or "").strip() or config.GEMINI_MODEL
    return name if name.startswith("models/") else f"models/{name}"


def build_request(
    system: str,
    messages: list[dict[str, str]],
    *,
    temperature: float | None = None,
    max_tokens: int | None = None,
) -> dict[str, Any]:
    """Translate chat-style messages into a generateContent body.

    Assistant turns become ``model`` turns. System messages inside the history
    have no place in ``contents`` and are appended to the system instruction.
    """
    system_parts = [system] if system else []
    contents: list[dict[str, Any]] = []
    for m in messages:
        role = m.get("role")
        text = m.get("content") or ""
        if role == "system":
            if text:
                system_parts.append(text)
            continue
        contents.append({"role": "model" if role == "assistant" else "user", "parts": [{"text": text}]})

    payload: dict[str, Any] = {"contents": contents}
    if system_parts:
        payload["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_parts)}]}

    generation: dict[str, Any] = {}
    if temperature is not None:
        generation["temperature"] = float(temperature)
    if max_tokens:
        generation["maxOutputTokens"] = int(max_tokens)
    if generation:
        payload["generationConfig"] = generation
    return payload


def extract_text(data: Any) -> str:
    try:
        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback") or {}
            raise GeminiError(f"Gemini returned no candidates (blockReason={feedback.get('blockReason')})")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(str(p.get("text") or "") for p in parts).strip()
    except (AttributeError, TypeError) as e:
        raise GeminiError(f"Unexpected Gemini response shape: {data}") from e


async def generate_text(
    system: str,
    messages: list[dict[str, str]],
    model: str | None = None,
    temperature: float | None = None,
    max_tokens: int | None = None,
    timeout_s: float = 60.0,
    *,
    api_key: str | None = None,
    base_url: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    key = api_key or config.GEMINI_API_KEY
    if not key:
        raise GeminiError("GEMINI_API_KEY is not configured")

    url = f"{(base_url or config.GEMINI_BASE_URL).rstrip('/')}/{_model_path(model)}:generateContent"
    payload = build_request(system, messages, temperature=temperature, max_tokens=max_tokens)
    headers = {"x-goog-api-key": key}

    log.debug("Gemini request: model=%s turns=%d", _model_path(model), len(payload["contents"]))
    async with httpx.AsyncClient(timeout=httpx.Timeout(timeout_s), transport=transport) as client:
        try:
            resp = await client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
        except httpx.TimeoutException as e:
            raise GeminiError(f"Gemini request timed out after {timeout_s:.1f}s ({type(e).__name__}).") from e
        except httpx.HTTPError as e:
            detail = None
            if isinstance(e, httpx.HTTPStatusError):
                detail = e.response.text
            msg = str(e).strip() or repr(e)
            raise GeminiError(f"Gemini request failed ({type(e).__name__}): {msg} {detail or ''}".strip()) from e

        try:
            data = resp.json()
        except ValueError as e:
            raise GeminiError(f"Gemini returned non-JSON body: {resp.text[:200]}") from e
        return extract_text(data)
