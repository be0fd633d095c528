from __future__ import annotations

from typing import Any


class PromptTemplateError(RuntimeError):
    pass


def missing_placeholders(template: str, required_placeholders: list[str] | None) -> list[str]:
    return [p for p in (required_placeholders or []) if f"{{{{{p}}}}}" not in template]


def render_template(template: str, variables: dict[str, Any], required_placeholders: list[str] | None = None) -> str:
    missing = missing_placeholders(template, required_placeholders)
    if missing:
        raise PromptTemplateError(
            "Prompt template missing required placeholders: " + ", ".join(f"{{{{{m}}}}}" for m in missing)
        )

    out = template
    for key, value in variables.items():
        out = out.replace(f"{{{{{key}}}}}", str(value))
    return out
