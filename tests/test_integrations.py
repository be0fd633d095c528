from __future__ import annotations

import asyncio
import base64
import json

import httpx
import pytest

from conftest import PLAN_MARKDOWN
from dietcoach import config, gemini, integrations, openrouter
from dietcoach.integrations import IntegrationError
from dietcoach.pdf_export import PlanPdfInputError


class Recorder:
    """MockTransport handler that remembers every request it answers."""

    def __init__(self, status_code: int = 200, body=None, raise_exc: Exception | None = None) -> None:
        self.status_code = status_code
        self.body = {} if body is None else body
        self.raise_exc = raise_exc
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_exc is not None:
            raise self.raise_exc
        if isinstance(self.body, (bytes, str)):
            return httpx.Response(self.status_code, content=self.body)
        return httpx.Response(self.status_code, json=self.body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    @property
    def last_json(self):
        return json.loads(self.requests[-1].content)


@pytest.fixture()
def keys(monkeypatch):
    monkeypatch.setattr(config, "SPOONACULAR_API_KEY", "spoon-key")
    monkeypatch.setattr(config, "PDFBOLT_API_KEY", "bolt-key")
    monkeypatch.setattr(config, "BREVO_API_KEY", "brevo-key")
    monkeypatch.setattr(config, "BREVO_SENDER_EMAIL", "coach@example.com")


# Spoonacular


def test_meal_plan_forwards_query_params(keys):
    rec = Recorder(body={"week": {"monday": {"meals": []}}})
    result = asyncio.run(
        integrations.generate_meal_plan(None, 2000.0, "vegetarian", "nuts,shellfish", transport=rec.transport)
    )
    assert result == {"week": {"monday": {"meals": []}}}
    params = rec.requests[0].url.params
    assert rec.requests[0].method == "GET"
    assert params["apiKey"] == "spoon-key"
    assert params["timeFrame"] == "week"
    assert params["targetCalories"] == "2000"
    assert params["diet"] == "vegetarian"
    assert params["exclude"] == "nuts,shellfish"


def test_meal_plan_omits_empty_filters(keys):
    rec = Recorder(body={"meals": []})
    asyncio.run(integrations.generate_meal_plan("day", None, "", None, transport=rec.transport))
    params = rec.requests[0].url.params
    assert params["timeFrame"] == "day"
    assert "targetCalories" not in params
    assert "diet" not in params
    assert "exclude" not in params


def test_meal_plan_requires_key(monkeypatch):
    monkeypatch.setattr(config, "SPOONACULAR_API_KEY", None)
    with pytest.raises(IntegrationError) as exc:
        asyncio.run(integrations.generate_meal_plan())
    assert exc.value.status_code == 500
    assert "SPOONACULAR_API_KEY" in exc.value.message


def test_meal_plan_upstream_error_keeps_status_and_message(keys):
    rec = Recorder(status_code=402, body={"status": "failure", "message": "Daily points limit reached"})
    with pytest.raises(IntegrationError) as exc:
        asyncio.run(integrations.generate_meal_plan(transport=rec.transport))
    assert exc.value.status_code == 402
    assert exc.value.message == "Daily points limit reached"


def test_meal_plan_upstream_error_without_message(keys):
    rec = Recorder(status_code=503, body={"status": "failure"})
    with pytest.raises(IntegrationError) as exc:
        asyncio.run(integrations.generate_meal_plan(transport=rec.transport))
    assert exc.value.status_code == 503
    assert exc.value.message == "Spoonacular meal plan request failed."


def test_meal_plan_transport_failure(keys):
    rec = Recorder(raise_exc=httpx.ConnectError("refused"))
    with pytest.raises(IntegrationError) as exc:
        asyncio.run(integrations.generate_meal_plan(transport=rec.transport))
    assert exc.value.status_code == 500
    assert exc.value.message == "Unexpected error while contacting Spoonacular."


# PDFBolt


def test_render_html_posts_payload(keys):
    rec = Recorder(body={"documentUrl": "https://files.example/plan.pdf"})
    result = asyncio.run(
        integrations.render_html("<h1>Plan</h1>", "plan.pdf", {"user": "jo"}, transport=rec.transport)
    )
    assert result == {"documentUrl": "https://files.example/plan.pdf"}
    request = rec.requests[0]
    assert request.headers["X-API-Key"] == "bolt-key"
    assert rec.last_json == {"html": "<h1>Plan</h1>", "fileName": "plan.pdf", "metadata": {"user": "jo"}}


def test_render_html_requires_markup(keys):
    with pytest.raises(IntegrationError) as exc:
        asyncio.run(integrations.render_html("   "))
    assert exc.value.status_code == 400
    assert exc.value.message == "Missing required 'html' markup"


def test_render_html_upstream_error(keys):
    rec = Recorder(status_code=422, body={"error": "Invalid HTML"})
    with pytest.raises(IntegrationError) as exc:
        asyncio.run(integrations.render_html("<p>x</p>", transport=rec.transport))
    assert exc.value.status_code == 422
    assert exc.value.message == "Invalid HTML"
    assert exc.value.details == {"error": "Invalid HTML"}


def test_render_html_non_json_body_is_returned_as_text(keys):
    rec = Recorder(body="rendered")
    assert asyncio.run(integrations.render_html("<p>x</p>", transport=rec.transport)) == "rendered"


# Brevo


def test_send_email_payload_and_default_subject(keys):
    rec = Recorder(status_code=201, body={"messageId": "<abc@brevo>"})
    result = asyncio.run(
        integrations.send_email(
            [" jo@example.com ", "", "sam@example.com"],
            html="<p>Hi</p>",
            sender_email="coach@example.com",
            sender_name="Coach",
            transport=rec.transport,
        )
    )
    assert result == {"messageId": "<abc@brevo>"}
    assert rec.requests[0].headers["api-key"] == "brevo-key"
    body = rec.last_json
    assert body["to"] == [{"email": "jo@example.com"}, {"email": "sam@example.com"}]
    assert body["subject"] == "Your weekly diet plan"
    assert body["sender"] == {"email": "coach@example.com", "name": "Coach"}
    assert body["htmlContent"] == "<p>Hi</p>"
    assert "attachment" not in body


@pytest.mark.parametrize(
    "to, sender, html",
    [
        (None, "coach@example.com", "<p>x</p>"),
        ([], "coach@example.com", "<p>x</p>"),
        ("jo@example.com", None, "<p>x</p>"),
        ("jo@example.com", "coach@example.com", ""),
    ],
)
def test_send_email_validates_fields(keys, to, sender, html):
    with pytest.raises(IntegrationError) as exc:
        asyncio.run(integrations.send_email(to, html=html, sender_email=sender))
    assert exc.value.status_code == 400
    assert exc.value.message == "Missing required 'to', 'senderEmail', or 'html' fields."


def test_send_email_upstream_error(keys):
    rec = Recorder(status_code=401, body={"code": "unauthorized", "message": "Key not found"})
    with pytest.raises(IntegrationError) as exc:
        asyncio.run(
            integrations.send_email("jo@example.com", html="<p>x</p>", sender_email="c@e.com", transport=rec.transport)
        )
    assert exc.value.status_code == 401
    assert exc.value.message == "Key not found"


def test_normalize_recipients():
    assert integrations.normalize_recipients(" a@b.c ") == ["a@b.c"]
    assert integrations.normalize_recipients(["a@b.c", 3, "  "]) == ["a@b.c"]
    assert integrations.normalize_recipients("") == []
    assert integrations.normalize_recipients(None) == []


# Plan email


def test_email_plan_attaches_rendered_pdf(keys):
    rec = Recorder(status_code=201, body={"messageId": "<m1>"})
    file_name, message = asyncio.run(
        integrations.email_plan(PLAN_MARKDOWN, "jo@example.com", "Your plan", "week-1.pdf", transport=rec.transport)
    )
    assert file_name == "week-1.pdf"
    assert message == {"messageId": "<m1>"}

    body = rec.last_json
    assert body["subject"] == "Your plan"
    assert body["sender"] == {"email": "coach@example.com", "name": config.BREVO_SENDER_NAME}
    assert "<h2>Day 1</h2>" in body["htmlContent"]
    assert body["textContent"] == PLAN_MARKDOWN.strip()
    (attachment,) = body["attachment"]
    assert attachment["name"] == "week-1.pdf"
    assert base64.b64decode(attachment["content"]).startswith(b"%PDF")


def test_email_plan_requires_recipient(keys):
    with pytest.raises(IntegrationError) as exc:
        asyncio.run(integrations.email_plan(PLAN_MARKDOWN, []))
    assert exc.value.status_code == 400


def test_email_plan_requires_sender(keys, monkeypatch):
    monkeypatch.setattr(config, "BREVO_SENDER_EMAIL", None)
    with pytest.raises(IntegrationError) as exc:
        asyncio.run(integrations.email_plan(PLAN_MARKDOWN, "jo@example.com"))
    assert exc.value.status_code == 500


def test_email_plan_rejects_empty_plan_before_sending(keys):
    rec = Recorder()
    with pytest.raises(PlanPdfInputError):
        asyncio.run(integrations.email_plan("  ", "jo@example.com", transport=rec.transport))
    assert rec.requests == []


# Gemini


def test_gemini_build_request_maps_roles():
    payload = gemini.build_request(
        "be helpful",
        [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
            {"role": "system", "content": "extra rule"},
            {"role": "user", "content": "plan please"},
        ],
        temperature=0.5,
        max_tokens=256,
    )
    assert payload["contents"] == [
        {"role": "user", "parts": [{"text": "hi"}]},
        {"role": "model", "parts": [{"text": "hello"}]},
        {"role": "user", "parts": [{"text": "plan please"}]},
    ]
    assert payload["systemInstruction"] == {"parts": [{"text": "be helpful\n\nextra rule"}]}
    assert payload["generationConfig"] == {"temperature": 0.5, "maxOutputTokens": 256}


def test_gemini_build_request_minimal():
    payload = gemini.build_request("", [{"role": "user", "content": "hi"}])
    assert set(payload) == {"contents"}


def test_gemini_generate_text():
    rec = Recorder(body={"candidates": [{"content": {"parts": [{"text": "Hello "}, {"text": "there"}]}}]})
    text = asyncio.run(
        gemini.generate_text(
            "sys",
            [{"role": "user", "content": "hi"}],
            model="gemini-test",
            api_key="g-key",
            base_url="https://gemini.test/v1beta/",
            transport=rec.transport,
        )
    )
    assert text == "Hello there"
    request = rec.requests[0]
    assert str(request.url) == "https://gemini.test/v1beta/models/gemini-test:generateContent"
    assert request.headers["x-goog-api-key"] == "g-key"


def test_gemini_requires_key(monkeypatch):
    monkeypatch.setattr(config, "GEMINI_API_KEY", None)
    with pytest.raises(gemini.GeminiError):
        asyncio.run(gemini.generate_text("sys", []))


def test_gemini_http_error():
    rec = Recorder(status_code=429, body={"error": {"message": "quota"}})
    with pytest.raises(gemini.GeminiError, match="quota"):
        asyncio.run(gemini.generate_text("sys", [], api_key="k", transport=rec.transport))


def test_gemini_blocked_prompt():
    rec = Recorder(body={"candidates": [], "promptFeedback": {"blockReason": "SAFETY"}})
    with pytest.raises(gemini.GeminiError, match="SAFETY"):
        asyncio.run(gemini.generate_text("sys", [], api_key="k", transport=rec.transport))


# OpenRouter


def test_build_vision_prompt():
    template = "Analyze this.\n\n{{user_context}}\n"
    assert openrouter.build_vision_prompt(template, "  left knee  ", ["user_context"]) == (
        "Analyze this.\n\n**Additional context provided by user:** left knee"
    )
    assert openrouter.build_vision_prompt(template, None) == "Analyze this."


def test_analyze_image_sends_data_uri():
    rec = Recorder(body={"choices": [{"message": {"content": "Looks like a salad."}}]})
    text = asyncio.run(
        openrouter.analyze_image(
            b"\x89PNGdata",
            "image/png",
            "describe",
            model="vision-test",
            temperature=0.2,
            max_tokens=100,
            api_key="or-key",
            transport=rec.transport,
        )
    )
    assert text == "Looks like a salad."
    request = rec.requests[0]
    assert request.headers["Authorization"] == "Bearer or-key"
    assert str(request.url).endswith("/chat/completions")
    body = rec.last_json
    assert body["model"] == "vision-test"
    assert body["max_tokens"] == 100
    text_part, image_part = body["messages"][0]["content"]
    assert text_part == {"type": "text", "text": "describe"}
    expected_uri = "data:image/png;base64," + base64.b64encode(b"\x89PNGdata").decode("ascii")
    assert image_part["image_url"]["url"] == expected_uri


def test_analyze_image_joins_content_parts():
    rec = Recorder(body={"choices": [{"message": {"content": [{"text": "a"}, {"text": "b"}]}}]})
    assert asyncio.run(openrouter.analyze_image(b"x", None, "p", api_key="k", transport=rec.transport)) == "ab"


def test_analyze_image_bad_shape():
    rec = Recorder(body={"choices": []})
    with pytest.raises(openrouter.OpenRouterError):
        asyncio.run(openrouter.analyze_image(b"x", "image/jpeg", "p", api_key="k", transport=rec.transport))


def test_analyze_image_requires_key(monkeypatch):
    monkeypatch.setattr(config, "OPENROUTER_API_KEY", None)
    with pytest.raises(openrouter.OpenRouterError):
        asyncio.run(openrouter.analyze_image(b"x", "image/jpeg", "p"))
