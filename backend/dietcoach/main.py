from __future__ import annotations

from typing import Any
from urllib.parse import quote

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from . import app_db, config, diet_chat, gemini, integrations, openrouter
from .auth import (
    AUTH_COOKIE,
    AuthContext,
    Permission,
    Principal,
    apply_auth_cookies,
    check_permission,
    clear_demo_role_cookie,
    create_login_session,
    ensure_bootstrap_admin,
    get_user_permissions,
    get_user_role,
    logout_session,
    permissions_for_role,
    register_user,
    require_login,
    require_permission,
    require_role,
    resolve_auth,
    set_demo_role_cookie,
    set_session_cookie,
)
from .logging_utils import get_logger
from .pdf_export import DEFAULT_FILENAME, PdfBuildError, PlanPdfInputError, render_plan_pdf
from .prompting import PromptTemplateError, missing_placeholders
from .schemas import (
    AdminSettingsResponse,
    AdminSettingsUpdateRequest,
    AuthMeResponse,
    BrevoSendRequest,
    BrevoSendResponse,
    ClearDemoRoleResponse,
    ConversationCreateRequest,
    ConversationMessageRequest,
    ConversationResponse,
    DietChatRequest,
    DietChatResponse,
    EmailPlanRequest,
    EmailPlanResponse,
    LoginRequest,
    LoginResponse,
    MealPlanRequest,
    MealPlanResponse,
    PdfBoltRenderRequest,
    PdfBoltRenderResponse,
    PermissionsResponse,
    PlanPdfRequest,
    RegisterRequest,
    UpgradeRequest,
    UpgradeResponse,
    VisionResponse,
)
from .settings import SettingsError, ensure_defaults, get_effective_settings, get_settings_bundle, update_settings

log = get_logger(__name__)

app = FastAPI(title="dietcoach-backend")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def _startup() -> None:
    app_db.init_db()
    ensure_defaults()
    ensure_bootstrap_admin()


def _me(request: Request, principal: Principal) -> AuthMeResponse:
    return AuthMeResponse(
        authenticated=bool(principal.authenticated),
        role=principal.role,
        effective_role=get_user_role(request, principal),
        username=principal.username,
        email=principal.email,
    )


def _effective_settings() -> dict[str, Any]:
    try:
        return get_effective_settings()
    except SettingsError as e:
        log.exception("Settings error")
        raise HTTPException(status_code=500, detail=str(e)) from e


def _integration_http_error(e: integrations.IntegrationError) -> HTTPException:
    detail: Any = e.message if e.details is None else {"error": e.message, "details": e.details}
    return HTTPException(status_code=e.status_code, detail=detail)


def _llm_http_error(e: gemini.GeminiError) -> HTTPException:
    log.exception("Gemini call failed")
    # A missing key is a server configuration problem, not an upstream failure.
    status = 502 if config.GEMINI_API_KEY else 500
    return HTTPException(status_code=status, detail=str(e))


def _content_disposition(filename: str) -> str:
    # The quoted form carries printable ASCII only; the full name goes percent-encoded.
    ascii_name = "".join(ch for ch in filename if 0x20 <= ord(ch) < 0x7F).strip() or DEFAULT_FILENAME
    header = f'attachment; filename="{ascii_name}"'
    if ascii_name != filename:
        header += f"; filename*=UTF-8''{quote(filename)}"
    return header


def _pdf_response(content: bytes, filename: str) -> Response:
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": _content_disposition(filename)},
    )


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "gemini_configured": bool(config.GEMINI_API_KEY),
        "openrouter_configured": bool(config.OPENROUTER_API_KEY),
        "spoonacular_configured": bool(config.SPOONACULAR_API_KEY),
        "pdfbolt_configured": bool(config.PDFBOLT_API_KEY),
        "brevo_configured": bool(config.BREVO_API_KEY and config.BREVO_SENDER_EMAIL),
    }


@app.get("/auth/me", response_model=AuthMeResponse)
def auth_me(request: Request, response: Response, ctx: AuthContext = Depends(resolve_auth)) -> AuthMeResponse:
    apply_auth_cookies(response, ctx)
    return _me(request, ctx.principal)


@app.post("/auth/register", response_model=LoginResponse)
def auth_register(req: RegisterRequest, request: Request, response: Response) -> LoginResponse:
    register_user(username=req.username, password=req.password, email=req.email)
    principal, token = create_login_session(username=req.username, password=req.password)
    set_session_cookie(response, token)
    return LoginResponse(user=_me(request, principal))


@app.post("/auth/login", response_model=LoginResponse)
def auth_login(req: LoginRequest, request: Request, response: Response) -> LoginResponse:
    principal, token = create_login_session(username=req.username, password=req.password)
    set_session_cookie(response, token)
    return LoginResponse(user=_me(request, principal))


@app.post("/auth/logout", response_model=AuthMeResponse)
def auth_logout(request: Request, response: Response, ctx: AuthContext = Depends(resolve_auth)) -> AuthMeResponse:
    if ctx.principal.authenticated:
        logout_session(request)
    response.delete_cookie(AUTH_COOKIE)
    return AuthMeResponse(authenticated=False, role="anonymous")


@app.get("/api/user/permissions", response_model=PermissionsResponse)
def user_permissions(request: Request, principal: Principal = Depends(require_login)) -> PermissionsResponse:
    return PermissionsResponse(
        permissions=get_user_permissions(request, principal),
        role=get_user_role(request, principal),
        user_id=str(principal.user_id),
    )


@app.post("/api/user/upgrade", response_model=UpgradeResponse)
def user_upgrade(
    req: UpgradeRequest, response: Response, principal: Principal = Depends(require_login)
) -> UpgradeResponse:
    # Demo upgrade: no payment, the role lives in a cookie only.
    if req.new_role != "pro_user":
        raise HTTPException(status_code=400, detail="Invalid role")
    log.info("User %s upgraded to %s", principal.user_id, req.new_role)
    set_demo_role_cookie(response, req.new_role)
    return UpgradeResponse(
        message="Upgrade successful!",
        new_role=req.new_role,
        new_permissions=permissions_for_role(req.new_role),
        user_id=str(principal.user_id),
    )


@app.post("/api/user/clear-demo-role", response_model=ClearDemoRoleResponse)
def user_clear_demo_role(response: Response) -> ClearDemoRoleResponse:
    clear_demo_role_cookie(response)
    return ClearDemoRoleResponse(message="Cleared demo role")


@app.post("/api/diet-chat", response_model=DietChatResponse)
async def diet_chat_turn(
    req: DietChatRequest, principal: Principal = Depends(require_permission(Permission.USE_DIET_AGENT))
) -> DietChatResponse:
    if not config.GEMINI_API_KEY:
        raise HTTPException(
            status_code=500,
            detail="Server is missing GEMINI_API_KEY. Please add it to your environment before chatting.",
        )
    if req.profile is None:
        raise HTTPException(status_code=400, detail="Missing profile data from intake form.")

    chat = diet_chat.ChatSettings.from_effective(_effective_settings())
    history = diet_chat.sanitize_messages(req.messages)
    try:
        reply = await diet_chat.generate_reply(req.profile, history, chat)
    except PromptTemplateError as e:
        log.exception("Prompt template error")
        raise HTTPException(status_code=500, detail=str(e)) from e
    except gemini.GeminiError as e:
        log.exception("Gemini call failed")
        raise HTTPException(
            status_code=502,
            detail="I ran into an issue while talking with the planning model. Please try again in a moment.",
        ) from e
    return DietChatResponse(reply=reply)


@app.post("/api/diet-chat/plan-pdf")
def diet_chat_plan_pdf(
    req: PlanPdfRequest, principal: Principal = Depends(require_permission(Permission.USE_PDF_API))
) -> Response:
    try:
        plan = render_plan_pdf(req.plan_markdown or "", req.file_name)
    except PlanPdfInputError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except PdfBuildError as e:
        log.exception("Failed to generate PDF")
        raise HTTPException(status_code=500, detail="Failed to generate PDF") from e
    return _pdf_response(plan.content, plan.filename)


@app.post("/api/diet-chat/email-plan", response_model=EmailPlanResponse)
async def diet_chat_email_plan(
    req: EmailPlanRequest, principal: Principal = Depends(require_permission(Permission.USE_PDF_API))
) -> EmailPlanResponse:
    try:
        file_name, message = await integrations.email_plan(
            req.plan_markdown, req.to, subject=req.subject, file_name=req.file_name
        )
    except PlanPdfInputError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except PdfBuildError as e:
        log.exception("Failed to generate PDF for email")
        raise HTTPException(status_code=500, detail="Failed to generate PDF") from e
    except integrations.IntegrationError as e:
        log.warning("Plan email failed: %s", e.message)
        raise _integration_http_error(e) from e
    return EmailPlanResponse(message=message, file_name=file_name)


def _conversation_for(conversation_id: str, principal: Principal) -> dict[str, Any]:
    conversation = app_db.get_conversation(conversation_id)
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")
    if conversation.get("owner_id") != principal.user_id and principal.role != "admin":
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


@app.post(
    "/api/diet-chat/conversations",
    response_model=ConversationResponse,
    response_model_exclude_none=True,
)
async def conversations_create(
    req: ConversationCreateRequest, principal: Principal = Depends(require_permission(Permission.USE_DIET_AGENT))
) -> dict[str, Any]:
    chat = diet_chat.ChatSettings.from_effective(_effective_settings())
    try:
        return await diet_chat.start_conversation(
            owner_id=str(principal.user_id), profile=req.profile, chat=chat, title=req.title
        )
    except PromptTemplateError as e:
        log.exception("Prompt template error")
        raise HTTPException(status_code=500, detail=str(e)) from e
    except gemini.GeminiError as e:
        raise _llm_http_error(e) from e


@app.get(
    "/api/diet-chat/conversations/{conversation_id}",
    response_model=ConversationResponse,
    response_model_exclude_none=True,
)
def conversations_get(
    conversation_id: str, principal: Principal = Depends(require_permission(Permission.USE_DIET_AGENT))
) -> dict[str, Any]:
    conversation = _conversation_for(conversation_id, principal)
    try:
        return diet_chat.conversation_state(conversation, app_db.list_messages(conversation_id))
    except ValueError as e:
        log.exception("Conversation %s is unreadable", conversation_id)
        raise HTTPException(status_code=500, detail=str(e)) from e


@app.post(
    "/api/diet-chat/conversations/{conversation_id}/messages",
    response_model=ConversationResponse,
    response_model_exclude_none=True,
)
async def conversations_post_message(
    conversation_id: str,
    req: ConversationMessageRequest,
    principal: Principal = Depends(require_permission(Permission.USE_DIET_AGENT)),
) -> dict[str, Any]:
    conversation = _conversation_for(conversation_id, principal)
    chat = diet_chat.ChatSettings.from_effective(_effective_settings())
    try:
        return await diet_chat.post_user_message(conversation=conversation, text=req.message, chat=chat)
    except PromptTemplateError as e:
        log.exception("Prompt template error")
        raise HTTPException(status_code=500, detail=str(e)) from e
    except gemini.GeminiError as e:
        raise _llm_http_error(e) from e
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


@app.get("/api/diet-chat/conversations/{conversation_id}/plan.pdf")
def conversations_plan_pdf(
    conversation_id: str,
    request: Request,
    principal: Principal = Depends(require_permission(Permission.USE_DIET_AGENT)),
) -> Response:
    check_permission(request, principal, Permission.USE_PDF_API)
    conversation = _conversation_for(conversation_id, principal)
    state = diet_chat.conversation_state(conversation, app_db.list_messages(conversation_id))
    if not state["plan_ready"]:
        raise HTTPException(status_code=409, detail="A finalized plan is required before generating a PDF.")
    try:
        plan = render_plan_pdf(state["plan_markdown"], state["file_name"])
    except PdfBuildError as e:
        log.exception("Failed to generate PDF")
        raise HTTPException(status_code=500, detail="Failed to generate PDF") from e
    return _pdf_response(plan.content, plan.filename)


@app.post("/api/gemini-vision", response_model=VisionResponse)
async def gemini_vision(
    image: UploadFile | None = File(default=None),
    details: str | None = Form(default=None),
    principal: Principal = Depends(require_permission(Permission.USE_VISION_API)),
) -> VisionResponse:
    if image is None:
        raise HTTPException(status_code=400, detail="No image provided")
    data = await image.read()
    if not data:
        raise HTTPException(status_code=400, detail="No image provided")

    effective = _effective_settings()
    vision = effective.get("vision") if isinstance(effective.get("vision"), dict) else {}
    required = effective.get("vision_required_placeholders")
    try:
        prompt = openrouter.build_vision_prompt(
            str(effective.get("vision_prompt_template") or ""),
            details,
            [str(p) for p in required] if isinstance(required, list) else None,
        )
        analysis = await openrouter.analyze_image(
            data,
            image.content_type,
            prompt,
            model=vision.get("model"),
            temperature=vision.get("temperature"),
            max_tokens=vision.get("max_tokens"),
            timeout_s=float(vision.get("timeout_s") or 120),
        )
    except PromptTemplateError as e:
        log.exception("Prompt template error")
        raise HTTPException(status_code=500, detail=str(e)) from e
    except openrouter.OpenRouterError as e:
        log.exception("Error analyzing image")
        status = 500 if not config.OPENROUTER_API_KEY else 502
        raise HTTPException(status_code=status, detail={"error": "Failed to analyze image", "details": str(e)}) from e
    return VisionResponse(analysis=analysis)


@app.post("/api/spoonacular/meal-plan", response_model=MealPlanResponse)
async def spoonacular_meal_plan(
    req: MealPlanRequest, principal: Principal = Depends(require_permission(Permission.USE_NUTRITION_API))
) -> MealPlanResponse:
    try:
        result = await integrations.generate_meal_plan(
            time_frame=req.time_frame,
            target_calories=req.target_calories,
            diet=req.diet,
            exclude=req.exclude,
        )
    except integrations.IntegrationError as e:
        raise _integration_http_error(e) from e
    return MealPlanResponse(meal_plan=result)


@app.post("/api/pdfbolt/render", response_model=PdfBoltRenderResponse)
async def pdfbolt_render(
    req: PdfBoltRenderRequest, principal: Principal = Depends(require_permission(Permission.USE_PDF_API))
) -> PdfBoltRenderResponse:
    try:
        result = await integrations.render_html(req.html, file_name=req.file_name, metadata=req.metadata)
    except integrations.IntegrationError as e:
        raise _integration_http_error(e) from e
    return PdfBoltRenderResponse(pdf=result)


@app.post("/api/brevo/send", response_model=BrevoSendResponse)
async def brevo_send(req: BrevoSendRequest, principal: Principal = Depends(require_login)) -> BrevoSendResponse:
    try:
        result = await integrations.send_email(
            req.to,
            subject=req.subject,
            html=req.html,
            text=req.text,
            sender_email=req.sender_email,
            sender_name=req.sender_name,
        )
    except integrations.IntegrationError as e:
        raise _integration_http_error(e) from e
    return BrevoSendResponse(message=result)


@app.get("/admin/settings", response_model=AdminSettingsResponse)
def admin_get_settings(ctx: AuthContext = Depends(resolve_auth)) -> dict[str, Any]:
    require_role(ctx, {"admin"})
    try:
        return get_settings_bundle()
    except SettingsError as e:
        log.exception("Settings error")
        raise HTTPException(status_code=500, detail=str(e)) from e


def _validate_template(settings: dict[str, Any], key: str, required: list[str]) -> None:
    if key not in settings:
        return
    tmpl = settings.get(key)
    if not isinstance(tmpl, str) or not tmpl.strip():
        raise HTTPException(status_code=400, detail=f"{key} must be a non-empty string")
    missing = missing_placeholders(tmpl, required)
    if missing:
        raise HTTPException(
            status_code=400,
            detail=f"{key} must include required placeholders: " + ", ".join(f"{{{{{m}}}}}" for m in missing),
        )


@app.post("/admin/settings", response_model=AdminSettingsResponse)
def admin_update_settings(req: AdminSettingsUpdateRequest, ctx: AuthContext = Depends(resolve_auth)) -> dict[str, Any]:
    require_role(ctx, {"admin"})
    try:
        effective = get_effective_settings()
        required = req.settings.get("required_placeholders", effective.get("required_placeholders")) or []
        vision_required = (
            req.settings.get("vision_required_placeholders", effective.get("vision_required_placeholders")) or []
        )
        _validate_template(req.settings, "system_prompt_template", [str(p) for p in required])
        _validate_template(req.settings, "vision_prompt_template", [str(p) for p in vision_required])
        return update_settings(req.settings)
    except SettingsError as e:
        log.warning("Rejected settings update: %s", e)
        raise HTTPException(status_code=400, detail=str(e)) from e
