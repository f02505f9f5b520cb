"""Placeholder substitution for action parameters (``{{firstName}}`` etc).

Only ``{{ ... }}`` expressions are recognised. Statement and comment tags
are switched off, so ``{%`` or ``{#`` in an email body is plain text.
Expressions run in Jinja's sandbox; an unsafe attribute walk raises
``SecurityError`` and fails the step like any other render error.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping

from jinja2 import ChainableUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from .errors import StepExecutionError
from .graph import ActionConfig

_env = SandboxedEnvironment(
    autoescape=False,
    undefined=ChainableUndefined,
    keep_trailing_newline=True,
    # NUL never occurs in CRM text fields
    block_start_string="\x00%",
    block_end_string="%\x00",
    comment_start_string="\x00#",
    comment_end_string="#\x00",
)


def render_text(text: str, data: Mapping[str, Any]) -> str:
    """Render ``text`` with entity fields; unknown fields become empty strings."""
    if "{" not in text:
        return text
    context: Dict[str, Any] = {**data, "entity": data}
    try:
        return _env.from_string(text).render(**context)
    except TemplateError as exc:
        raise StepExecutionError(f"Cannot render template {text!r}: {exc}") from exc


def _render_value(value: Any, data: Mapping[str, Any]) -> Any:
    if isinstance(value, str):
        return render_text(value, data)
    if isinstance(value, dict):
        return {key: _render_value(item, data) for key, item in value.items()}
    if isinstance(value, list):
        return [_render_value(item, data) for item in value]
    return value


def render_config(config: ActionConfig, data: Mapping[str, Any]) -> ActionConfig:
    """Return a copy of ``config`` with every string parameter rendered."""
    rendered = {
        name: _render_value(getattr(config, name), data)
        for name in type(config).model_fields
        if name != "action_type"
    }
    return config.model_copy(update=rendered)
