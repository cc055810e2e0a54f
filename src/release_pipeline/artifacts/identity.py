"""Filesystem identities used for artifact ownership handoff."""

from __future__ import annotations

import os
import pwd
from dataclasses import dataclass

from release_pipeline.domain.errors import ConfigurationError


@dataclass(frozen=True, slots=True)
class Identity:
    uid: int
    gid: int
    name: str

    @classmethod
    def current(cls) -> Identity:
        uid = os.getuid()
        try:
            name = pwd.getpwuid(uid).pw_name
        except KeyError:
            name = str(uid)
        return cls(uid=uid, gid=os.getgid(), name=name)

    @classmethod
    def from_name(cls, name: str) -> Identity:
        try:
            entry = pwd.getpwnam(name)
        except KeyError as exc:
            raise ConfigurationError(f"unknown user {name!r}") from exc
        return cls(uid=entry.pw_uid, gid=entry.pw_gid, name=entry.pw_name)

    @classmethod
    def resolve(cls, owner: str | None) -> Identity:
        """Return the named identity, or the current one when ``owner`` is blank."""

        if owner is None or not owner.strip():
            return cls.current()
        return cls.from_name(owner.strip())


__all__ = ["Identity"]
