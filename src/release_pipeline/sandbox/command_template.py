"""Strict Jinja2 rendering of stage command templates."""

from __future__ import annotations

from collections.abc import Collection, Mapping
from typing import Final

from jinja2 import Environment, StrictUndefined, TemplateError, meta

from release_pipeline.domain.errors import StageTemplateError

#: Variables every stage command may reference.
STAGE_VARIABLES: Final[frozenset[str]] = frozenset(
    {
        "arch",
        "architectures",
        "artifact_dir",
        "cache_dir",
        "features",
        "flags",
        "image_scratch",
        "inputs",
        "outputs",
        "plan_id",
        "platform",
        "source_dir",
        "stage",
        "tag",
        "target",
        "version",
        "workdir",
    }
)

_ENVIRONMENT: Final[Environment] = Environment(
    undefined=StrictUndefined,
    autoescape=False,
    trim_blocks=False,
    lstrip_blocks=False,
    newline_sequence="\n",
    keep_trailing_newline=False,
)


def template_variables(template: str) -> tuple[str, ...]:
    """Return the sorted free variables referenced by ``template``."""

    try:
        parsed = _ENVIRONMENT.parse(template)
    except TemplateError as exc:
        raise StageTemplateError(f"invalid command template: {exc}") from exc
    return tuple(sorted(meta.find_undeclared_variables(parsed)))


def validate_template(
    stage: str,
    template: str,
    allowed_variables: Collection[str] = STAGE_VARIABLES,
) -> tuple[str, ...]:
    """Reject templates that reference variables outside ``allowed_variables``."""

    try:
        declared = template_variables(template)
    except StageTemplateError as exc:
        raise StageTemplateError(f"stage {stage!r}: {exc}") from exc
    unexpected = sorted(set(declared) - set(allowed_variables))
    if unexpected:
        raise StageTemplateError(
            f"stage {stage!r} command uses unknown variables: {', '.join(unexpected)}"
        )
    return declared


def render_command(stage: str, template: str, variables: Mapping[str, object]) -> str:
    try:
        rendered = _ENVIRONMENT.from_string(template).render(**dict(variables))
    except TemplateError as exc:
        raise StageTemplateError(f"stage {stage!r}: cannot render command: {exc}") from exc
    rendered = rendered.strip()
    if not rendered:
        raise StageTemplateError(f"stage {stage!r}: command rendered to an empty string")
    return rendered


__all__ = ["STAGE_VARIABLES", "render_command", "template_variables", "validate_template"]
