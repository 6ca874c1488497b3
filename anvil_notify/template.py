"""Jinja template rendering for subjects and email bodies.

Plain-text templates (subject, body_text) insert values verbatim; HTML
templates (body_html) escape every ``{{ variable }}``, with ``| safe`` as the
only way to insert trusted HTML unescaped. Undefined variables are errors in
both modes.
"""

from __future__ import annotations

from typing import Any, Mapping

import jinja2

from anvil_notify.errors import TemplateError

_TEXT_ENV = jinja2.Environment(autoescape=False, undefined=jinja2.StrictUndefined)
_HTML_ENV = jinja2.Environment(autoescape=True, undefined=jinja2.StrictUndefined)


def render_template(template: str, payload: Mapping[str, Any]) -> str:
    """Render a plain-text template; no HTML escaping is applied.

    Raises :class:`TemplateError` if the template fails to parse or render.
    """
    return _render(_TEXT_ENV, template, payload)


def render_html_template(template: str, payload: Mapping[str, Any]) -> str:
    """Render an HTML template with auto-escaping enabled.

    Raises :class:`TemplateError` if the template fails to parse or render.
    """
    return _render(_HTML_ENV, template, payload)


def _render(env: jinja2.Environment, template: str, payload: Mapping[str, Any]) -> str:
    try:
        compiled = env.from_string(template)
    except jinja2.TemplateError as exc:
        raise _template_error("parse", exc) from exc
    if not isinstance(payload, Mapping):
        raise TemplateError(
            f"template render error: payload must be an object, got {type(payload).__name__}"
        )
    try:
        return compiled.render(payload)
    except jinja2.TemplateError as exc:
        raise _template_error("render", exc) from exc
    except (TypeError, ValueError, AttributeError) as exc:
        raise TemplateError(f"template render error: {exc}") from exc


def _template_error(phase: str, exc: jinja2.TemplateError) -> TemplateError:
    location = ""
    lineno = getattr(exc, "lineno", None)
    if lineno is not None:
        location = f" (line {lineno})"
    if isinstance(exc, jinja2.UndefinedError):
        return TemplateError(f"undefined variable during {phase}: {exc}{location}")
    return TemplateError(f"template {phase} error: {exc}{location}")