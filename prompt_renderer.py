# prompt_renderer.py
"""Prompt rendering.

Task prompts are plain-text templates with ``[NAME]`` placeholders filled by
``fill_template``. Structured blocks (memory context, author style and
manuscript export) are Jinja2 templates rendered with ``render_prompt``.
"""

import json
import re
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader
from jinja2.utils import htmlsafe_json_dumps
from pydantic import BaseModel

from core.errors import MissingPromptTemplateError

PROMPTS_PATH = Path(__file__).parent / "prompts"
TASK_TEMPLATES_PATH = PROMPTS_PATH / "tasks"
_env = Environment(loader=FileSystemLoader(PROMPTS_PATH), autoescape=False)

_PLACEHOLDER_RE = re.compile(r"\[([A-Z][A-Z0-9_]*)\]")

TASK_IDS = (
    "analyze_source",
    "generate_idea",
    "build_blueprint",
    "generate_chapter",
    "summarize_chapter",
    "analyze_text",
    "enhance_text",
    "check_consistency",
    "enhance_dialogue",
    "grammar_style_check",
)


def _default_json_serializer(value: Any) -> Any:
    """Serialize pydantic models for JSON output."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True, exclude_none=True)
    raise TypeError(
        f"Object of type {value.__class__.__name__} is not JSON serializable"
    )


_env.policies["json.dumps_function"] = lambda obj, **kw: json.dumps(
    obj,
    default=_default_json_serializer,
    **kw,
)


def _tojson(value: Any, indent: int | None = None) -> str:
    """JSON filter that supports pydantic models."""
    dumps: Callable[..., str] = lambda obj, **kwargs: json.dumps(
        obj, default=_default_json_serializer, ensure_ascii=False, **kwargs
    )
    kwargs: dict[str, Any] = {}
    if indent is not None:
        kwargs["indent"] = indent
    return htmlsafe_json_dumps(value, dumps=dumps, **kwargs)


def _dumps(value: Any, indent: int | None = None) -> str:
    """Plain JSON filter for prompt text (no HTML escaping)."""
    if indent is None:
        return json.dumps(
            value,
            default=_default_json_serializer,
            ensure_ascii=False,
            separators=(",", ":"),
        )
    return json.dumps(
        value, default=_default_json_serializer, ensure_ascii=False, indent=indent
    )


_env.filters["tojson"] = _tojson
_env.filters["dumps"] = _dumps


def render_prompt(template_name: str, context: dict[str, Any]) -> str:
    """Render a Jinja2 template from the prompts directory."""
    template = _env.get_template(template_name)
    return template.render(**context)


def format_value(value: Any) -> str:
    """String form of a template variable."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, BaseModel):
        return json.dumps(_default_json_serializer(value), ensure_ascii=False)
    if isinstance(value, dict):
        return json.dumps(value, default=_default_json_serializer, ensure_ascii=False)
    if isinstance(value, list | tuple):
        return ", ".join(
            item if isinstance(item, str) else format_value(item) for item in value
        )
    return str(value)


def fill_template(template: str, variables: Mapping[str, Any]) -> str:
    """Replace every ``[NAME]`` whose name is in ``variables``.

    Unknown placeholders are left untouched.
    """

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in variables:
            return match.group(0)
        return format_value(variables[name])

    return _PLACEHOLDER_RE.sub(_replace, template)


def json_fragment(value: Any) -> str:
    """Value as text that can sit inside a JSON string or array literal.

    Strings become their escaped body (no quotes); lists become comma-separated
    JSON items; anything else is dumped as JSON.
    """
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)[1:-1]
    if isinstance(value, list | tuple):
        return ", ".join(
            json.dumps(item, default=_default_json_serializer, ensure_ascii=False)
            for item in value
        )
    return json.dumps(value, default=_default_json_serializer, ensure_ascii=False)


def with_json_variants(variables: Mapping[str, Any]) -> dict[str, Any]:
    """Copy of ``variables`` adding a ``NAME_JSON`` escaped variant for each entry."""
    expanded = dict(variables)
    for name, value in variables.items():
        expanded.setdefault(f"{name}_JSON", json_fragment(value))
    return expanded


def template_placeholders(template: str) -> set[str]:
    """Names of all ``[NAME]`` placeholders in ``template``."""
    return set(_PLACEHOLDER_RE.findall(template))


def load_task_template(
    task_id: str, overrides: Mapping[str, str] | None = None
) -> str:
    """Return the prompt template for ``task_id``.

    A non-empty override wins over the shipped default.
    """
    if overrides and overrides.get(task_id, "").strip():
        return overrides[task_id]
    path = TASK_TEMPLATES_PATH / f"{task_id}.txt"
    if not path.is_file():
        raise MissingPromptTemplateError(task_id)
    return path.read_text(encoding="utf-8")
