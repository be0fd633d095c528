"""Thin forwarders to Spoonacular, PDFBolt and Brevo.

Each call validates its input, checks that the service is configured, forwards
the request once and hands back the parsed upstream body. Failures surface as
``IntegrationError`` carrying the HTTP status the caller should answer with.
"""

from __future__ import annotations

import base64
import json
from typing import Any

import httpx

from . import config
from .logging_utils import get_logger
from .pdf_export import render_markdown_html, render_plan_pdf

log = get_logger(__name__)

DEFAULT_EMAIL_SUBJECT = "Your weekly diet plan"
DEFAULT_TIMEOUT_S = 30.0


class IntegrationError(RuntimeError):
    def __init__(self, message: str, status_code: int = 500, details: Any | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details


def _parse_body(resp: httpx.Response) -> Any:
    text = resp.text
    try:
        return json.loads(text)
    except ValueError:
        return text


def _upstream_message(parsed: Any, key: str, fallback: str) -> str:
    if isinstance(parsed, dict) and key in parsed:
        value = parsed.get(key)
        return fallback if value is None else str(value)
    return fallback


def normalize_recipients(to: str | list[str] | None) -> list[str]:
    if isinstance(to, list):
        return [str(v).strip() for v in to if isinstance(v, str) and v.strip()]
    if isinstance(to, str) and to.strip():
        return [to.strip()]
    return []


def _clean(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


async def generate_meal_plan(
    time_frame: str | None = None,
    target_calories: float | None = None,
    diet: str | None = None,
    exclude: str | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    timeout_s: float = DEFAULT_TIMEOUT_S,
) -> Any:
    api_key = config.SPOONACULAR_API_KEY
    if not api_key:
        raise IntegrationError("Missing SPOONACULAR_API_KEY. Please update your environment configuration.", 500)

    params: dict[str, str] = {"apiKey": api_key, "timeFrame": time_frame or "week"}
    if target_calories:
        value = int(target_calories) if float(target_calories).is_integer() else target_calories
        params["targetCalories"] = str(value)
    if diet:
        params["diet"] = diet
    if exclude:
        params["exclude"] = exclude

    log.info("Spoonacular meal plan: timeFrame=%s diet=%s", params["timeFrame"], diet or "-")
    async with httpx.AsyncClient(timeout=httpx.Timeout(timeout_s), transport=transport) as client:
        try:
            resp = await client.get(config.SPOONACULAR_MEAL_PLAN_URL, params=params)
            result = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            log.exception("Spoonacular meal-plan request failed")
            raise IntegrationError("Unexpected error while contacting Spoonacular.", 500) from e

    if not resp.is_success:
        message = result.get("message") if isinstance(result, dict) else None
        if not isinstance(message, str):
            message = "Spoonacular meal plan request failed."
        raise IntegrationError(message, resp.status_code)
    return result


async def render_html(
    html: str | None,
    file_name: str | None = None,
    metadata: dict[str, Any] | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    timeout_s: float = DEFAULT_TIMEOUT_S,
) -> Any:
    markup = _clean(html)
    if not markup:
        raise IntegrationError("Missing required 'html' markup", 400)

    api_key = config.PDFBOLT_API_KEY
    if not api_key:
        raise IntegrationError("Missing PDFBOLT_API_KEY. Please update your environment configuration.", 500)

    payload = {"html": markup, "fileName": _clean(file_name), "metadata": metadata or {}}
    headers = {"X-API-Key": api_key}

    log.info("PDFBolt render: fileName=%s", payload["fileName"] or "-")
    async with httpx.AsyncClient(timeout=httpx.Timeout(timeout_s), transport=transport) as client:
        try:
            resp = await client.post(config.PDFBOLT_ENDPOINT, json=payload, headers=headers)
        except httpx.HTTPError as e:
            log.exception("PDFBolt request failed")
            raise IntegrationError("Unexpected error while contacting PDFBolt.", 500) from e

    parsed = _parse_body(resp)
    if not resp.is_success:
        raise IntegrationError(
            _upstream_message(parsed, "error", "PDFBolt request failed"), resp.status_code, parsed
        )
    return parsed


async def send_email(
    to: str | list[str] | None,
    subject: str | None = None,
    html: str | None = None,
    text: str | None = None,
    sender_email: str | None = None,
    sender_name: str | None = None,
    attachments: list[dict[str, str]] | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    timeout_s: float = DEFAULT_TIMEOUT_S,
) -> Any:
    recipients = normalize_recipients(to)
    sender = _clean(sender_email)
    markup = _clean(html)

    if not recipients or not sender or not markup:
        raise IntegrationError("Missing required 'to', 'senderEmail', or 'html' fields.", 400)

    api_key = config.BREVO_API_KEY
    if not api_key:
        raise IntegrationError("Missing BREVO_API_KEY. Please update your environment configuration.", 500)

    payload: dict[str, Any] = {
        "sender": {"email": sender, "name": _clean(sender_name)},
        "to": [{"email": email} for email in recipients],
        "subject": _clean(subject) or DEFAULT_EMAIL_SUBJECT,
        "htmlContent": markup,
        "textContent": _clean(text),
    }
    if attachments:
        payload["attachment"] = attachments
    headers = {"api-key": api_key, "Accept": "application/json"}

    log.info("Brevo send: recipients=%d attachments=%d", len(recipients), len(attachments or []))
    async with httpx.AsyncClient(timeout=httpx.Timeout(timeout_s), transport=transport) as client:
        try:
            resp = await client.post(config.BREVO_ENDPOINT, json=payload, headers=headers)
        except httpx.HTTPError as e:
            log.exception("Brevo request failed")
            raise IntegrationError("Unexpected error while contacting Brevo.", 500) from e

    parsed = _parse_body(resp)
    if not resp.is_success:
        raise IntegrationError(_upstream_message(parsed, "message", "Brevo request failed"), resp.status_code, parsed)
    return parsed


async def email_plan(
    plan_markdown: str | None,
    to: str | list[str] | None,
    subject: str | None = None,
    file_name: str | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> tuple[str, Any]:
    """Send a plan as an HTML email with its PDF attached.

    Returns the attachment file name and the parsed Brevo response. The PDF
    build raises ``PlanPdfInputError`` / ``PdfBuildError`` before anything is
    sent.
    """
    if not normalize_recipients(to):
        raise IntegrationError("Missing required 'to' field.", 400)
    sender = config.BREVO_SENDER_EMAIL
    if not sender:
        raise IntegrationError("Missing BREVO_SENDER_EMAIL. Please update your environment configuration.", 500)

    plan = render_plan_pdf(plan_markdown or "", file_name)
    html = render_markdown_html(plan_markdown or "")
    attachment = {"name": plan.filename, "content": base64.b64encode(plan.content).decode("ascii")}

    message = await send_email(
        to,
        subject=subject,
        html=html,
        text=str(plan_markdown).strip(),
        sender_email=sender,
        sender_name=config.BREVO_SENDER_NAME,
        attachments=[attachment],
        transport=transport,
    )
    return plan.filename, message
