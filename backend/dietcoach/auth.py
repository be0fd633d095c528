from __future__ import annotations

import hashlib
import hmac
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Literal

from fastapi import HTTPException, Request, Response

from . import app_db
from .config import COOKIE_SECURE, DEMO_ROLE_COOKIE_MAX_AGE_S
from .logging_utils import get_logger

log = get_logger(__name__)

Role = Literal["admin", "pro_user", "free_user", "anonymous"]

AUTH_COOKIE = "dietcoach_session"
DEMO_ROLE_COOKIE = "demo_role"

_AUTH_SECRET = os.getenv("DIETCOACH_AUTH_SECRET")
if not _AUTH_SECRET:
    _AUTH_SECRET = secrets.token_hex(32)
    log.warning("DIETCOACH_AUTH_SECRET is not set; using ephemeral secret (sessions reset on restart).")

SESSION_TTL_S = int(os.getenv("DIETCOACH_SESSION_TTL_S", "2592000"))  # 30 days


class Permission:
    USE_VISION_AGENT = "use:vision_agent"
    USE_DIET_AGENT = "use:diet_agent"
    READ_HEALTH_DATA = "read:health_data"
    WRITE_HEALTH_DATA = "write:health_data"
    DELETE_HEALTH_DATA = "delete:health_data"
    USE_VISION_API = "use:vision_api"
    USE_NUTRITION_API = "use:nutrition_api"
    USE_PDF_API = "use:pdf_api"
    MANAGE_TOKENS = "manage:tokens"
    VIEW_TOKENS = "view:tokens"


ALL_PERMISSIONS: tuple[str, ...] = (
    Permission.USE_VISION_AGENT,
    Permission.USE_DIET_AGENT,
    Permission.READ_HEALTH_DATA,
    Permission.WRITE_HEALTH_DATA,
    Permission.DELETE_HEALTH_DATA,
    Permission.USE_VISION_API,
    Permission.USE_NUTRITION_API,
    Permission.USE_PDF_API,
    Permission.MANAGE_TOKENS,
    Permission.VIEW_TOKENS,
)

FREE_PERMISSIONS: tuple[str, ...] = (
    Permission.USE_VISION_AGENT,
    Permission.READ_HEALTH_DATA,
    Permission.USE_VISION_API,
)

PRO_PERMISSIONS: tuple[str, ...] = FREE_PERMISSIONS + (
    Permission.USE_DIET_AGENT,
    Permission.WRITE_HEALTH_DATA,
    Permission.USE_NUTRITION_API,
    Permission.USE_PDF_API,
)

ROLE_PERMISSIONS: dict[str, tuple[str, ...]] = {
    "free_user": FREE_PERMISSIONS,
    "pro_user": PRO_PERMISSIONS,
    "admin": ALL_PERMISSIONS,
}

UPGRADE_MESSAGE = "Upgrade to Pro to access this feature"


@dataclass(frozen=True)
class Principal:
    authenticated: bool
    role: Role
    user_id: str | None = None
    username: str | None = None
    email: str | None = None


@dataclass(frozen=True)
class AuthContext:
    principal: Principal
    clear_auth_cookie: bool = False


ANONYMOUS = Principal(authenticated=False, role="anonymous")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _token_hash(token: str) -> str:
    return hmac.new(_AUTH_SECRET.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()


def hash_password(password: str, *, iterations: int = 200_000) -> str:
    pwd = str(password or "")
    if not pwd:
        raise ValueError("Password is empty")
    salt = secrets.token_bytes(16)
    dk = hashlib.pbkdf2_hmac("sha256", pwd.encode("utf-8"), salt, iterations)
    return f"pbkdf2_sha256${iterations}${salt.hex()}${dk.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        algo, it_s, salt_hex, hash_hex = str(stored or "").split("$", 3)
        if algo != "pbkdf2_sha256":
            return False
        iterations = int(it_s)
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(hash_hex)
    except ValueError:
        return False

    dk = hashlib.pbkdf2_hmac("sha256", str(password or "").encode("utf-8"), salt, iterations)
    return hmac.compare_digest(dk, expected)


def ensure_bootstrap_admin() -> None:
    username = str(os.getenv("DIETCOACH_ADMIN_USERNAME") or "admin").strip()
    password = os.getenv("DIETCOACH_ADMIN_PASSWORD")
    reset = str(os.getenv("DIETCOACH_ADMIN_PASSWORD_RESET") or "").strip().lower() in ("1", "true", "yes", "y")
    generated = False

    if app_db.count_users() == 0:
        if not password:
            password = secrets.token_urlsafe(14)
            generated = True

        try:
            rec = app_db.create_user(username=username, password_hash=hash_password(password), role="admin")
        except Exception as e:
            log.exception("Failed to create bootstrap admin user")
            raise RuntimeError(f"Failed to create bootstrap admin user: {e}") from e

        if generated:
            log.warning(
                "BOOTSTRAP admin user created: username=%s password=%s (set DIETCOACH_ADMIN_PASSWORD to override)",
                rec["username"],
                password,
            )
        else:
            log.info("Bootstrap admin user created: username=%s (password from env)", rec["username"])
        return

    if not reset:
        return
    if not password:
        log.warning("DIETCOACH_ADMIN_PASSWORD_RESET is set but DIETCOACH_ADMIN_PASSWORD is empty; skipping.")
        return

    user = app_db.get_user_by_username(username)
    password_hash = hash_password(password)
    if user:
        app_db.update_user(user_id=str(user["user_id"]), role="admin", password_hash=password_hash)
        log.warning(
            "Admin password reset via env for username=%s (remove DIETCOACH_ADMIN_PASSWORD_RESET after first run).",
            username,
        )
    else:
        app_db.create_user(username=username, password_hash=password_hash, role="admin")
        log.warning(
            "Admin user created via env: username=%s (remove DIETCOACH_ADMIN_PASSWORD_RESET after first run).",
            username,
        )


def _principal_from_record(rec: dict) -> Principal:
    return Principal(
        authenticated=True,
        role=str(rec.get("role") or "free_user"),  # type: ignore[arg-type]
        user_id=str(rec.get("user_id") or ""),
        username=str(rec.get("username") or ""),
        email=str(rec.get("email") or "") or None,
    )


def resolve_auth(request: Request) -> AuthContext:
    # Clean up expired sessions opportunistically.
    try:
        app_db.delete_expired_auth_sessions(_utc_now().isoformat())
    except Exception:
        log.debug("Expired session cleanup failed", exc_info=True)

    token = request.cookies.get(AUTH_COOKIE)
    if not token:
        return AuthContext(principal=ANONYMOUS)

    th = _token_hash(token)
    sess = app_db.get_auth_session(th)
    if not sess:
        return AuthContext(principal=ANONYMOUS, clear_auth_cookie=True)

    try:
        expires_at = datetime.fromisoformat(str(sess.get("expires_at") or ""))
    except ValueError:
        expires_at = _utc_now() - timedelta(seconds=1)
    if expires_at <= _utc_now():
        app_db.delete_auth_session(th)
        return AuthContext(principal=ANONYMOUS, clear_auth_cookie=True)

    app_db.touch_auth_session(th)
    return AuthContext(principal=_principal_from_record(sess))


def apply_auth_cookies(response: Response, ctx: AuthContext) -> None:
    if ctx.clear_auth_cookie:
        response.delete_cookie(AUTH_COOKIE)


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        AUTH_COOKIE,
        token,
        httponly=True,
        samesite="lax",
        secure=COOKIE_SECURE,
        max_age=SESSION_TTL_S,
    )


def set_demo_role_cookie(response: Response, role: str) -> None:
    response.set_cookie(
        DEMO_ROLE_COOKIE,
        role,
        httponly=True,
        samesite="lax",
        secure=COOKIE_SECURE,
        max_age=DEMO_ROLE_COOKIE_MAX_AGE_S,
        path="/",
    )


def clear_demo_role_cookie(response: Response) -> None:
    response.set_cookie(
        DEMO_ROLE_COOKIE,
        "",
        httponly=True,
        samesite="lax",
        secure=COOKIE_SECURE,
        max_age=0,
        path="/",
    )


def demo_role_from_cookie(value: str | None) -> str:
    if value == "admin":
        return "admin"
    if value == "pro_user":
        return "pro_user"
    return "free_user"


def get_user_role(request: Request, principal: Principal) -> str | None:
    """Effective role of the caller.

    A ``demo_role`` cookie overrides whatever role the account carries, so the
    upgrade flow can be demonstrated without touching the user record.
    Anonymous callers have no role.
    """
    if not principal.authenticated:
        return None
    demo = request.cookies.get(DEMO_ROLE_COOKIE)
    if demo is not None and demo != "":
        return demo_role_from_cookie(demo)
    if principal.role in ROLE_PERMISSIONS:
        return principal.role
    return "free_user"


def permissions_for_role(role: str | None) -> list[str]:
    if not role:
        return []
    return list(ROLE_PERMISSIONS.get(role, FREE_PERMISSIONS))


def get_user_permissions(request: Request, principal: Principal) -> list[str]:
    return permissions_for_role(get_user_role(request, principal))


def has_permission(request: Request, principal: Principal, permission: str) -> bool:
    return permission in get_user_permissions(request, principal)


def require_login(request: Request) -> Principal:
    principal = resolve_auth(request).principal
    if not principal.authenticated:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return principal


def check_permission(request: Request, principal: Principal, permission: str) -> None:
    if has_permission(request, principal, permission):
        return
    log.info("Denied %s to user %s (role=%s)", permission, principal.username, get_user_role(request, principal))
    raise HTTPException(
        status_code=403,
        detail={
            "error": "Forbidden: Insufficient permissions",
            "required": permission,
            "message": UPGRADE_MESSAGE,
        },
    )


def require_permission(permission: str) -> Callable[[Request], Principal]:
    """FastAPI dependency factory gating a route on one permission."""

    def _dependency(request: Request) -> Principal:
        principal = require_login(request)
        check_permission(request, principal, permission)
        return principal

    return _dependency


def require_role(ctx: AuthContext, allowed: set[Role]) -> None:
    if ctx.principal.role not in allowed:
        raise HTTPException(status_code=403, detail="Forbidden")


def register_user(*, username: str, password: str, email: str | None = None) -> dict:
    ident = str(username or "").strip()
    if not ident:
        raise HTTPException(status_code=400, detail="Username is required")
    if not str(password or ""):
        raise HTTPException(status_code=400, detail="Password is required")
    mail = str(email or "").strip() or None
    if app_db.get_user_by_username(ident):
        raise HTTPException(status_code=409, detail="Username is already taken")
    if mail and app_db.get_user_by_email(mail):
        raise HTTPException(status_code=409, detail="Email is already registered")
    return app_db.create_user(username=ident, password_hash=hash_password(password), role="free_user", email=mail)


def create_login_session(*, username: str, password: str) -> tuple[Principal, str]:
    ident = str(username or "").strip()
    rec = app_db.get_user_by_username(ident)
    if not rec and "@" in ident:
        rec = app_db.get_user_by_email(ident)
    if not rec:
        raise HTTPException(status_code=401, detail="Invalid username or password")
    if not verify_password(password, str(rec.get("password_hash") or "")):
        raise HTTPException(status_code=401, detail="Invalid username or password")

    token = secrets.token_urlsafe(32)
    th = _token_hash(token)
    expires_at = (_utc_now() + timedelta(seconds=SESSION_TTL_S)).isoformat()
    try:
        app_db.create_auth_session(token_hash=th, user_id=str(rec["user_id"]), expires_at=expires_at)
    except Exception as e:
        log.exception("Failed to create auth session")
        raise HTTPException(status_code=500, detail=f"Failed to create auth session: {e}") from e

    return _principal_from_record(rec), token


def logout_session(request: Request) -> None:
    token = request.cookies.get(AUTH_COOKIE)
    if not token:
        return
    app_db.delete_auth_session(_token_hash(token))
