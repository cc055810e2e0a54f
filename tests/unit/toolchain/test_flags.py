"""Unit tests for release channel flag derivation and feature strings."""

from __future__ import annotations

import pytest

from release_pipeline.toolchain.flags import derive_flags, feature_string


@pytest.mark.parametrize(
    ("channel", "expected"),
    [
        ("dev-unstable", {"dev", "unstable"}),
        ("dev", {"dev"}),
        ("unstable", {"unstable"}),
        ("0.3.5-dev", {"dev"}),
        ("", set()),
        ("NONE", set()),
        (None, set()),
        ("devel", set()),
        ("predev-unstablex", set()),
        ("stable", set()),
    ],
)
def test_derive_flags_matches_whole_dash_tokens(channel: str | None, expected: set[str]) -> None:
    assert derive_flags(channel) == frozenset(expected)


def test_derive_flags_uses_custom_markers() -> None:
    assert derive_flags("beta-dev", markers=("beta",)) == frozenset({"beta"})
    assert derive_flags("beta-dev", markers=()) == frozenset()


def test_derive_flags_is_pure() -> None:
    first = derive_flags("dev-unstable")
    second = derive_flags("dev-unstable")
    assert first == second


def test_feature_string_keeps_base_order_then_sorted_flags() -> None:
    assert feature_string(["avahi-alias"], {"unstable", "dev"}) == "avahi-alias,dev,unstable"


def test_feature_string_drops_duplicates_and_blanks() -> None:
    assert feature_string(["dev", " ", "avahi-alias"], ["dev"]) == "dev,avahi-alias"


def test_feature_string_passes_unknown_flags_verbatim() -> None:
    assert feature_string([], ["experimental-thing"]) == "experimental-thing"
    assert feature_string([], []) == ""
