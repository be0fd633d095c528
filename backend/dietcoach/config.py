from __future__ import annotations

import os
from pathlib import Path


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _env_flag(name: str, default: str = "") -> bool:
    return str(os.getenv(name, default) or "").strip().lower() in ("1", "true", "yes", "y")


REPO_ROOT = _repo_root()

BACKEND_DIR = REPO_ROOT / "backend"
PROMPTS_DIR = BACKEND_DIR / "prompts"

APP_DB_PATH = Path(os.getenv("DIETCOACH_APP_DB_PATH", str(BACKEND_DIR / "data" / "app.sqlite")))

LOG_LEVEL = os.getenv("DIETCOACH_LOG_LEVEL", "INFO")

# Identity/session cookies.
COOKIE_SECURE = _env_flag("DIETCOACH_COOKIE_SECURE")
DEMO_ROLE_COOKIE_MAX_AGE_S = 60 * 60 * 24 * 30

# LLM providers.
GEMINI_API_KEY = (os.getenv("GEMINI_API_KEY") or "").strip() or None
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta").rstrip("/")
GEMINI_MODEL = os.getenv("GEMINI_MODEL") or "models/gemini-2.0-flash"

OPENROUTER_API_KEY = (os.getenv("OPENROUTER_API_KEY") or "").strip() or None
OPENROUTER_BASE_URL = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1").rstrip("/")
OPENROUTER_VISION_MODEL = os.getenv("OPENROUTER_VISION_MODEL") or "qwen/qwen2.5-vl-72b-instruct:free"

# Third-party integrations.
SPOONACULAR_API_KEY = (os.getenv("SPOONACULAR_API_KEY") or "").strip() or None
SPOONACULAR_MEAL_PLAN_URL = os.getenv(
    "SPOONACULAR_MEAL_PLAN_URL", "https://api.spoonacular.com/mealplanner/generate"
)

PDFBOLT_API_KEY = (os.getenv("PDFBOLT_API_KEY") or "").strip() or None
PDFBOLT_ENDPOINT = (os.getenv("PDFBOLT_ENDPOINT") or "").strip() or "https://api.pdfbolt.com/v1/pdf"

BREVO_API_KEY = (os.getenv("BREVO_API_KEY") or "").strip() or None
BREVO_ENDPOINT = (os.getenv("BREVO_ENDPOINT") or "").strip() or "https://api.brevo.com/v3/smtp/email"
BREVO_SENDER_EMAIL = (os.getenv("BREVO_SENDER_EMAIL") or "").strip() or None
BREVO_SENDER_NAME = (os.getenv("BREVO_SENDER_NAME") or "").strip() or "Diet Coach"
