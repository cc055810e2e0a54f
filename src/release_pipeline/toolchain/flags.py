"""Feature-flag derivation from release channel strings.

A channel such as ``dev-unstable`` enables one feature set per marker it contains.
A marker only counts as a whole ``-``-separated token, so ``devel`` does not enable
``dev``.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Final

DEFAULT_FLAG_MARKERS: Final[tuple[str, ...]] = ("dev", "unstable")
NO_CHANNEL: Final[str] = "NONE"


def derive_flags(
    channel: str | None,
    markers: Iterable[str] = DEFAULT_FLAG_MARKERS,
) -> frozenset[str]:
    """Return the feature flags enabled by ``channel``."""

    if channel is None:
        return frozenset()
    normalized = channel.strip()
    if not normalized or normalized == NO_CHANNEL:
        return frozenset()

    enabled: set[str] = set()
    for marker in markers:
        token = marker.strip()
        if not token:
            continue
        if re.search(rf"(^|-){re.escape(token)}($|-)", normalized):
            enabled.add(token)
    return frozenset(enabled)


def feature_string(base: Iterable[str], flags: Iterable[str]) -> str:
    """
    Join base features and flags into a toolchain feature argument.

    Base features keep their declared order, flags follow sorted; duplicates and
    blanks are dropped. Flags the toolchain may not know are kept verbatim.
    """

    ordered: list[str] = []
    for item in (*base, *sorted(flags)):
        value = item.strip()
        if value and value not in ordered:
            ordered.append(value)
    return ",".join(ordered)


__all__ = ["DEFAULT_FLAG_MARKERS", "NO_CHANNEL", "derive_flags", "feature_string"]
