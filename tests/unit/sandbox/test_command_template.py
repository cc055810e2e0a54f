"""Unit tests for stage command templates."""

from __future__ import annotations

import pytest

from release_pipeline.domain.errors import ConfigurationError, StageTemplateError
from release_pipeline.sandbox import (
    STAGE_VARIABLES,
    render_command,
    template_variables,
    validate_template,
)


def test_template_variables_are_sorted_and_unique() -> None:
    template = "make -C {{ source_dir }} ARCH={{ arch }} TARGET={{ target }}-{{ arch }}"

    assert template_variables(template) == ("arch", "source_dir", "target")


def test_validate_accepts_known_variables() -> None:
    assert validate_template("compile", "cargo build --features {{ features }}") == ("features",)
    assert set(validate_template("noop", "true")) <= STAGE_VARIABLES


def test_validate_rejects_unknown_variables() -> None:
    with pytest.raises(StageTemplateError, match="unknown variables: colour, size"):
        validate_template("compile", "echo {{ colour }} {{ size }} {{ arch }}")


def test_validate_rejects_syntax_errors_as_configuration_errors() -> None:
    with pytest.raises(ConfigurationError, match="stage 'compile'"):
        validate_template("compile", "echo {{ arch ")


def test_render_substitutes_variables() -> None:
    rendered = render_command(
        "compile",
        "  cargo build --target {{ target }} --features {{ features }}\n",
        {"target": "x86_64-unknown-linux-musl", "features": "dev"},
    )

    assert rendered == "cargo build --target x86_64-unknown-linux-musl --features dev"


def test_render_fails_on_undefined_variable() -> None:
    with pytest.raises(StageTemplateError, match="cannot render"):
        render_command("compile", "echo {{ arch }}", {})


def test_render_rejects_empty_command() -> None:
    with pytest.raises(StageTemplateError, match="empty string"):
        render_command("compile", "{{ flags }}", {"flags": ""})


def test_render_supports_loops_over_architectures() -> None:
    rendered = render_command(
        "init",
        "{% for a in architectures %}build-init {{ a }}; {% endfor %}",
        {"architectures": ["x86_64", "aarch64"]},
    )

    assert rendered == "build-init x86_64; build-init aarch64;"
