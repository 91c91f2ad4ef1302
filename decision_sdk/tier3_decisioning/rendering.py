"""
decision_sdk.tier3_decisioning.rendering
──────────────────────────────────────────
Content personalization for triggered engagements. The orchestrator asks a
ContentRenderer for personalized content only when the template opts in via
personalization.use_psychographic_data. Rendering is never allowed to stop
a rule from firing: any renderer failure falls back to the template's own
content.

Hosts plug in their own renderer (an LLM call, a templating engine) with
set_renderer(); the default returns template content unchanged.

Configure via: DECISION_RENDERER_BACKEND=template
"""
from __future__ import annotations

import copy
from typing import Any, Protocol, runtime_checkable

from decision_sdk.tier0_core.errors import ConfigurationError
from decision_sdk.tier0_core.logging import get_logger
from decision_sdk.tier2_storage.entities import Profile, Template

log = get_logger(__name__)


# ── Protocol ───────────────────────────────────────────────────────────────

@runtime_checkable
class ContentRenderer(Protocol):
    async def render(self, template: Template, profile: Profile | None) -> dict[str, Any]: ...


# ── Default renderer ───────────────────────────────────────────────────────

class TemplateContentRenderer:
    """Returns the template content as-is."""

    async def render(self, template: Template, profile: Profile | None) -> dict[str, Any]:
        return copy.deepcopy(template.content)


# ── Fallback wrapper ───────────────────────────────────────────────────────

async def render_with_fallback(
    renderer: ContentRenderer,
    template: Template,
    profile: Profile | None,
) -> dict[str, Any]:
    """
    Render through *renderer*; on any exception return the template content.

    Usage:
        content = await render_with_fallback(get_renderer(), template, profile)
    """
    try:
        rendered = await renderer.render(template, profile)
    except Exception as exc:
        log.warning(
            "rendering.fallback",
            template_id=template.id,
            renderer=type(renderer).__name__,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return copy.deepcopy(template.content)
    if not rendered or not isinstance(rendered, dict):
        log.warning(
            "rendering.fallback",
            template_id=template.id,
            renderer=type(renderer).__name__,
            error="renderer returned no content",
            error_type=type(rendered).__name__,
        )
        return copy.deepcopy(template.content)
    return rendered


# ── Provider factory ───────────────────────────────────────────────────────

_renderer: ContentRenderer | None = None


def get_renderer() -> ContentRenderer:
    global _renderer
    if _renderer is not None:
        return _renderer

    from decision_sdk.tier0_core.config import get_config

    backend = get_config().renderer_backend.lower()
    if backend == "template":
        _renderer = TemplateContentRenderer()
    else:
        raise ConfigurationError(
            user_message=f"Unknown DECISION_RENDERER_BACKEND: {backend!r}. Supported: template"
        )
    return _renderer


def set_renderer(renderer: ContentRenderer | None) -> None:
    """Install a host renderer (or reset to the configured default with None)."""
    global _renderer
    _renderer = renderer


__all__ = [
    "ContentRenderer", "TemplateContentRenderer",
    "render_with_fallback", "get_renderer", "set_renderer",
]
