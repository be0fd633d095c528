from __future__ import annotations

import os
import tempfile
import uuid
from pathlib import Path

import pytest

_TMP_DIR = Path(tempfile.mkdtemp(prefix="dietcoach-tests-"))

# Must be set before any dietcoach module is imported.
os.environ["DIETCOACH_APP_DB_PATH"] = str(_TMP_DIR / "app.sqlite")
os.environ["DIETCOACH_AUTH_SECRET"] = "test-secret"
os.environ["DIETCOACH_ADMIN_USERNAME"] = "admin"
os.environ["DIETCOACH_ADMIN_PASSWORD"] = "admin-password"
for _key in (
    "GEMINI_API_KEY",
    "OPENROUTER_API_KEY",
    "SPOONACULAR_API_KEY",
    "PDFBOLT_API_KEY",
    "BREVO_API_KEY",
    "BREVO_SENDER_EMAIL",
):
    os.environ.pop(_key, None)

from fastapi.testclient import TestClient  # noqa: E402

from dietcoach import config  # noqa: E402
from dietcoach.main import app  # noqa: E402

PLAN_MARKDOWN = """# Seven day plan

## Day 1

- Breakfast: oats with berries (420 kcal, 18 g protein)
- Lunch: chicken salad (560 kcal)
- Dinner: salmon with rice (640 kcal)
- Snack: greek yogurt (150 kcal)

## Day 2

1. Breakfast: eggs and toast
2. Lunch: lentil soup
3. Dinner: tofu stir fry

```
Grocery list
- oats
- salmon
```
"""


def sample_profile(**form_overrides) -> dict:
    form = {
        "age": "34",
        "sex": "female",
        "heightUnit": "cm",
        "heightCm": "168",
        "heightFt": "",
        "heightIn": "",
        "weightUnit": "kg",
        "weightKg": "64",
        "weightLb": "",
        "activityLevel": "moderate",
        "mainGoal": "Lose Weight",
        "email": "jo@example.com",
        "dislikedFoods": "mushrooms",
        "medicalNote": "",
        "weeklyBudget": "80",
        "cuisines": ["mediterranean", "thai"],
        "country": "Canada",
        "countryCode": "CA",
        "dietStyle": "pescatarian",
    }
    form.update(form_overrides)
    return {
        "form": form,
        "height": {"unit": "cm", "value": 168},
        "weight": {"unit": "kg", "value": 64},
        "weeklyBudgetRange": {"min": 50, "max": 100},
        "timestamp": "2024-05-01T10:00:00Z",
    }


@pytest.fixture()
def client():
    with TestClient(app) as c:
        yield c


def register(client: TestClient, *, email: str | None = None) -> dict:
    username = f"user-{uuid.uuid4().hex[:10]}"
    resp = client.post(
        "/auth/register",
        json={"username": username, "password": "secret-pass", "email": email or f"{username}@example.com"},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["user"]


@pytest.fixture()
def free_client(client):
    register(client)
    return client


@pytest.fixture()
def pro_client(client):
    register(client)
    resp = client.post("/api/user/upgrade", json={"newRole": "pro_user"})
    assert resp.status_code == 200, resp.text
    return client


@pytest.fixture()
def gemini_configured(monkeypatch):
    monkeypatch.setattr(config, "GEMINI_API_KEY", "test-gemini-key")


@pytest.fixture()
def brevo_configured(monkeypatch):
    monkeypatch.setattr(config, "BREVO_API_KEY", "test-brevo-key")
    monkeypatch.setattr(config, "BREVO_SENDER_EMAIL", "coach@example.com")
