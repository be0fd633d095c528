from __future__ import annotations

from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Number = Union[int, float]


class CamelModel(BaseModel):
    # Wire format uses the browser client's camelCase keys.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HeightMetric(CamelModel):
    unit: Literal["cm", "imperial"] = "cm"
    value: Number | None = None
    feet: Number | None = None
    inches: Number | None = None


class WeightMetric(CamelModel):
    unit: Literal["kg", "lb"] = "kg"
    value: Number | None = None


class BudgetRange(CamelModel):
    min: Number | None = None
    max: Number | None = None


class DietFormSnapshot(CamelModel):
    age: str = ""
    sex: str = ""
    height_unit: Literal["cm", "imperial"] = "cm"
    height_cm: str = ""
    height_ft: str = ""
    height_in: str = ""
    weight_unit: Literal["kg", "lb"] = "kg"
    weight_kg: str = ""
    weight_lb: str = ""
    activity_level: str = ""
    main_goal: str = ""
    email: str = ""
    disliked_foods: str = ""
    medical_note: str = ""
    weekly_budget: str = ""
    cuisines: list[str] = Field(default_factory=list)
    country: str = ""
    country_code: str = ""
    diet_style: str = ""


class DietChatPayload(CamelModel):
    form: DietFormSnapshot
    height: HeightMetric = Field(default_factory=HeightMetric)
    weight: WeightMetric = Field(default_factory=WeightMetric)
    weekly_budget_range: BudgetRange = Field(default_factory=BudgetRange)
    timestamp: str | None = None


class ChatMessage(BaseModel):
    role: str
    content: str


class DietChatRequest(BaseModel):
    profile: DietChatPayload | None = None
    # Entries are validated one by one; malformed ones are dropped, not rejected.
    messages: list[Any] = Field(default_factory=list)


class DietChatResponse(BaseModel):
    reply: str


class PlanPdfRequest(CamelModel):
    plan_markdown: str | None = None
    file_name: str | None = None


class EmailPlanRequest(CamelModel):
    plan_markdown: str | None = None
    to: str | list[str] | None = None
    subject: str | None = None
    file_name: str | None = None


class EmailPlanResponse(CamelModel):
    success: bool = True
    message: Any | None = None
    file_name: str


class ConversationCreateRequest(BaseModel):
    profile: DietChatPayload
    title: str | None = None


class ConversationMessageRequest(BaseModel):
    message: str = Field(min_length=1)


class ConversationMessage(CamelModel):
    message_id: str
    role: Literal["system", "user", "assistant"]
    content: str
    created_at: str


class ConversationResponse(CamelModel):
    conversation_id: str
    title: str | None = None
    created_at: str
    messages: list[ConversationMessage]
    plan_ready: bool
    plan_markdown: str | None = None
    file_name: str
    email_status: Literal["sent", "failed"] | None = None
    email_error: str | None = None


class MealPlanRequest(CamelModel):
    time_frame: str | None = None
    target_calories: Number | None = None
    diet: str | None = None
    exclude: str | None = None


class MealPlanResponse(CamelModel):
    meal_plan: Any


class PdfBoltRenderRequest(CamelModel):
    html: str | None = None
    file_name: str | None = None
    metadata: dict[str, Any] | None = None


class PdfBoltRenderResponse(BaseModel):
    pdf: Any


class BrevoSendRequest(CamelModel):
    to: str | list[str] | None = None
    subject: str | None = None
    html: str | None = None
    text: str | None = None
    sender_email: str | None = None
    sender_name: str | None = None


class BrevoSendResponse(BaseModel):
    message: Any


class VisionResponse(BaseModel):
    analysis: str


class PermissionsResponse(CamelModel):
    permissions: list[str]
    role: str | None = None
    user_id: str


class UpgradeRequest(CamelModel):
    new_role: str | None = None


class UpgradeResponse(CamelModel):
    success: bool = True
    message: str
    new_role: str
    new_permissions: list[str]
    user_id: str


class ClearDemoRoleResponse(BaseModel):
    success: bool = True
    message: str


class AdminSettingsUpdateRequest(BaseModel):
    settings: dict[str, Any]


class AdminSettingsResponse(BaseModel):
    defaults: dict[str, Any]
    settings: dict[str, Any]
    effective: dict[str, Any]


class AuthMeResponse(BaseModel):
    authenticated: bool
    role: Literal["admin", "pro_user", "free_user", "anonymous"]
    effective_role: str | None = None
    username: str | None = None
    email: str | None = None


class LoginRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class RegisterRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=6)
    email: str | None = None


class LoginResponse(BaseModel):
    user: AuthMeResponse


class OkResponse(BaseModel):
    ok: bool = True
