from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from . import app_db, gemini, integrations
from .logging_utils import get_logger
from .pdf_export import DEFAULT_FILENAME, PdfBuildError, PlanPdfInputError
from .prompting import render_template
from .schemas import BudgetRange, ChatMessage, DietChatPayload, HeightMetric, WeightMetric

log = get_logger(__name__)

PLAN_MIN_CHARS = 160
DEFAULT_COACH_NAME = "DietCoach"

_DAY_RE = re.compile(r"day\s*(?:\d+|one|two|three|four|five|six|seven)", re.IGNORECASE)
_MEAL_RE = re.compile(r"(breakfast|lunch|dinner|snack|meal)")
_NUTRIENT_RE = re.compile(r"(calorie|kcal|protein|carb|fat)")
_BULLET_RE = re.compile(r"^[\s>*-]|\d+\.")
_EMAIL_VERB_RE = re.compile(r"mail|email|send")
_EMAIL_OBJECT_RE = re.compile(r"plan|diet|meal")
_SLUG_RE = re.compile(r"[^a-z0-9]+")
_CONTENT_DISPOSITION_RE = re.compile(r'filename="?([^";]+)"?', re.IGNORECASE)
_TRAILING_WS_RE = re.compile(r"\s+$")

NO_EMAIL_MESSAGE = "No email on file. Update your intake form first."
NO_PLAN_MESSAGE = "A full meal plan is not available yet. Ask the coach to finish it first."


def _num(value: Any, unknown: str) -> str:
    if value is None:
        return unknown
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def normalize_role(role: str) -> str:
    if role in ("assistant", "system"):
        return role
    return "user"


def sanitize_messages(messages: list[Any]) -> list[dict[str, str]]:
    out: list[dict[str, str]] = []
    for m in messages or []:
        if not isinstance(m, dict):
            continue
        role = m.get("role")
        content = m.get("content")
        if not isinstance(role, str) or not isinstance(content, str):
            continue
        msg = ChatMessage(role=normalize_role(role), content=_TRAILING_WS_RE.sub("", content))
        out.append(msg.model_dump())
    return out


def describe_budget(budget: BudgetRange) -> str:
    if budget.min is None and budget.max is None:
        return "No limit"
    if budget.min is None:
        return f"< ${_num(budget.max, '')}"
    if budget.max is None:
        return f"${_num(budget.min, '')}+"
    return f"${_num(budget.min, '')} - ${_num(budget.max, '')}"


def format_height(height: HeightMetric, unknown: str = "?") -> str:
    if height.unit == "cm":
        return f"{_num(height.value, unknown)} cm"
    return f"{_num(height.feet, unknown)} ft {_num(height.inches, '0')} in"


def format_weight(weight: WeightMetric, unknown: str = "?") -> str:
    return f"{_num(weight.value, unknown)} {weight.unit}"


def profile_summary(profile: DietChatPayload) -> str:
    form = profile.form
    lines = [
        f"Age: {form.age}",
        f"Sex: {form.sex or 'Not provided'}",
        f"Height input: {format_height(profile.height)}",
        f"Weight input: {format_weight(profile.weight)}",
        f"Activity level: {form.activity_level or 'Not provided'}",
        f"Primary goal: {form.main_goal}",
        f"Diet style: {form.diet_style or 'No preference'}",
        f"Cuisine focus: {', '.join(form.cuisines) if form.cuisines else 'Open'}",
        f"Weekly budget band: {describe_budget(profile.weekly_budget_range)}",
        f"Country: {form.country or 'Unknown'} ({form.country_code or '??'})",
    ]
    if form.disliked_foods:
        lines.append(f"Disliked foods: {form.disliked_foods}")
    if form.medical_note:
        lines.append(f"Medical notes: {form.medical_note}")
    return "\n".join(lines)


def integration_line(profile: DietChatPayload) -> str:
    form = profile.form
    tags = ", ".join(form.cuisines) if form.cuisines else "no tag"
    return (
        "Use these integrations conceptually: Gemini for reasoning, Spoonacular for cuisine + diet tags "
        f"({form.diet_style or 'none'}, {tags}), PDFBolt to render the final plan to PDF, "
        f"Brevo to send the PDF via email ({form.email})."
    )


def build_system_prompt(
    profile: DietChatPayload,
    template: str,
    required_placeholders: list[str] | None = None,
    coach_name: str | None = None,
) -> str:
    variables = {
        "coach_name": coach_name or DEFAULT_COACH_NAME,
        "integration_line": integration_line(profile),
        "profile_summary": profile_summary(profile),
    }
    return render_template(template, variables, required_placeholders).strip()


def build_profile_message(profile: DietChatPayload) -> str:
    """Hidden first user turn that hands the intake form to the coach."""
    form = profile.form
    height = profile.height
    if height.unit == "cm":
        height_text = f"{_num(height.value, 'unknown')} cm"
    else:
        height_text = f"{_num(height.feet, '??')} ft {_num(height.inches, '0')} in"

    entries = [
        f"Age: {form.age}",
        f"Sex: {form.sex or 'N/A'}",
        f"Height: {height_text}",
        f"Weight: {format_weight(profile.weight, 'unknown')}",
        f"Activity level: {form.activity_level or 'N/A'}",
        f"Goal: {form.main_goal}",
        f"Diet style: {form.diet_style or 'No preference'}",
        f"Budget: {describe_budget(profile.weekly_budget_range)}",
        f"Cuisine bias: {', '.join(form.cuisines) if form.cuisines else 'None specified'}",
        f"Location: {form.country or 'N/A'} ({form.country_code or '??'})",
    ]
    if form.disliked_foods:
        entries.append(f"Dislikes: {form.disliked_foods}")
    if form.medical_note:
        entries.append(f"Medical: {form.medical_note}")

    return "\n".join(
        [
            "You are the nutrition AI coach.",
            "Here is the latest profile you must use as primary context:",
            "\n".join(f"- {e}" for e in entries),
            "Follow the workflow:",
            "1. Acknowledge the intake summary in friendly tone.",
            "2. Ask one clarifying question at a time until you can produce a confident 7-day diet plan "
            "(breakfast, lunch, dinner, snacks) obeying restrictions.",
            "3. After the questions are complete, deliver the plan in Markdown with per-day structure, "
            "calories estimates, and key nutrients.",
            "4. Offer to adjust the plan when the user replies.",
            "Remember to consider Spoonacular cuisine tags, Gemini reasoning, PDFBolt formatting, and Brevo "
            "delivery for next actions (describe what you will do, we will call those services separately).",
        ]
    )


def looks_like_plan(text: str) -> bool:
    # Heuristic only; a chatty reply that mentions meals and macros passes too.
    normalized = str(text or "").lower()
    if len(normalized) < PLAN_MIN_CHARS:
        return False
    has_day = bool(_DAY_RE.search(text))
    has_meals = bool(_MEAL_RE.search(normalized))
    has_nutrients = bool(_NUTRIENT_RE.search(normalized))
    bullet_lines = sum(1 for line in text.split("\n") if _BULLET_RE.search(line.strip()))
    return (has_day and has_meals) or (has_meals and bullet_lines >= 6) or (has_meals and has_nutrients)


def latest_plan(messages: list[dict[str, Any]]) -> str | None:
    for m in reversed(messages):
        if m.get("role") == "user":
            continue
        text = str(m.get("content") or "").strip()
        if text and looks_like_plan(text):
            return text
    return None


def should_trigger_email(message: str, email: str | None) -> bool:
    normalized = str(message or "").lower()
    if not _EMAIL_VERB_RE.search(normalized):
        return False
    if not _EMAIL_OBJECT_RE.search(normalized):
        return False
    return bool(email)


def build_file_name(goal: str | None, extension: str = ".pdf") -> str:
    base = _SLUG_RE.sub("-", str(goal or "").strip().lower()).strip("-")
    if not base:
        return DEFAULT_FILENAME if extension == ".pdf" else f"diet-plan{extension}"
    return f"{base}{extension}"


def extract_file_name(content_disposition: str | None) -> str | None:
    if not content_disposition:
        return None
    m = _CONTENT_DISPOSITION_RE.search(content_disposition)
    return m.group(1) if m else None


def email_subject(profile: DietChatPayload) -> str:
    return f"Your {profile.form.main_goal or 'weekly diet'} plan"


def load_profile(conversation: dict[str, Any]) -> DietChatPayload:
    try:
        return DietChatPayload.model_validate(conversation.get("profile") or {})
    except ValidationError as e:
        raise ValueError(f"Stored profile is invalid: {e}") from e


@dataclass(frozen=True)
class ChatSettings:
    system_prompt_template: str
    required_placeholders: list[str]
    coach_name: str
    model: str | None
    temperature: float | None
    max_tokens: int | None
    timeout_s: float

    @classmethod
    def from_effective(cls, effective: dict[str, Any]) -> "ChatSettings":
        llm = effective.get("llm") if isinstance(effective.get("llm"), dict) else {}
        required = effective.get("required_placeholders")
        return cls(
            system_prompt_template=str(effective.get("system_prompt_template") or ""),
            required_placeholders=[str(p) for p in required] if isinstance(required, list) else [],
            coach_name=str(effective.get("coach_name") or DEFAULT_COACH_NAME),
            model=str(llm.get("model") or "") or None,
            temperature=float(llm["temperature"]) if llm.get("temperature") is not None else None,
            max_tokens=int(llm["max_tokens"]) if llm.get("max_tokens") else None,
            timeout_s=float(llm.get("timeout_s") or 60),
        )


async def generate_reply(profile: DietChatPayload, history: list[dict[str, str]], chat: ChatSettings) -> str:
    system = build_system_prompt(profile, chat.system_prompt_template, chat.required_placeholders, chat.coach_name)
    return await gemini.generate_text(
        system,
        history,
        model=chat.model,
        temperature=chat.temperature,
        max_tokens=chat.max_tokens,
        timeout_s=chat.timeout_s,
    )


def _visible(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [m for m in messages if not m.get("hidden")]


def conversation_state(conversation: dict[str, Any], messages: list[dict[str, Any]]) -> dict[str, Any]:
    profile = load_profile(conversation)
    plan = latest_plan(messages)
    return {
        "conversation_id": conversation["conversation_id"],
        "title": conversation.get("title"),
        "created_at": conversation["created_at"],
        "messages": [
            {
                "message_id": m["message_id"],
                "role": m["role"],
                "content": m["content"],
                "created_at": m["created_at"],
            }
            for m in _visible(messages)
        ],
        "plan_ready": plan is not None,
        "plan_markdown": plan,
        "file_name": build_file_name(profile.form.main_goal),
    }


async def start_conversation(
    *, owner_id: str, profile: DietChatPayload, chat: ChatSettings, title: str | None = None
) -> dict[str, Any]:
    intro = build_profile_message(profile)
    reply = await generate_reply(profile, [{"role": "user", "content": intro}], chat)

    conversation = app_db.create_conversation(
        owner_id=owner_id,
        profile=profile.model_dump(by_alias=True),
        title=title or profile.form.main_goal or None,
    )
    conversation_id = conversation["conversation_id"]
    app_db.insert_message(conversation_id, "user", intro, hidden=True)
    app_db.insert_message(conversation_id, "assistant", reply)
    log.info("Started conversation %s for %s", conversation_id, owner_id)
    return conversation_state(conversation, app_db.list_messages(conversation_id))


async def _email_current_plan(profile: DietChatPayload, plan: str | None) -> tuple[str, str | None]:
    if not profile.form.email:
        return "failed", NO_EMAIL_MESSAGE
    if not plan:
        return "failed", NO_PLAN_MESSAGE
    try:
        await integrations.email_plan(
            plan,
            profile.form.email,
            subject=email_subject(profile),
            file_name=build_file_name(profile.form.main_goal),
        )
    except integrations.IntegrationError as e:
        log.warning("Plan email failed: %s", e.message)
        return "failed", e.message
    except (PlanPdfInputError, PdfBuildError) as e:
        log.exception("Plan email failed")
        return "failed", str(e)
    return "sent", None


async def post_user_message(*, conversation: dict[str, Any], text: str, chat: ChatSettings) -> dict[str, Any]:
    """Run one user turn of a stored conversation.

    An email request is answered with the plan that existed before this turn,
    and its outcome never fails the turn itself.
    """
    message = str(text or "").strip()
    if not message:
        raise ValueError("Message is empty")

    conversation_id = conversation["conversation_id"]
    profile = load_profile(conversation)
    stored = app_db.list_messages(conversation_id)

    email_status: str | None = None
    email_error: str | None = None
    if should_trigger_email(message, profile.form.email):
        email_status, email_error = await _email_current_plan(profile, latest_plan(stored))

    history = sanitize_messages([{"role": m["role"], "content": m["content"]} for m in stored])
    history.append({"role": "user", "content": message})
    reply = await generate_reply(profile, history, chat)

    app_db.insert_message(conversation_id, "user", message)
    app_db.insert_message(conversation_id, "assistant", reply)

    state = conversation_state(conversation, app_db.list_messages(conversation_id))
    state["email_status"] = email_status
    state["email_error"] = email_error
    return state
