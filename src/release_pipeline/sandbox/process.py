"""Process-tree termination for timed-out stages."""

from __future__ import annotations

import logging

import psutil

logger = logging.getLogger(__name__)


def kill_process_tree(pid: int, *, grace_seconds: float = 5.0) -> int:
    """
    Terminate ``pid`` and every descendant, escalating to SIGKILL after the grace period.

    Returns the number of processes that were signalled. Processes that exit on their
    own while being collected are ignored.
    """

    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return 0

    try:
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        children = []

    victims = [*children, parent]
    for process in victims:
        try:
            process.terminate()
        except psutil.NoSuchProcess:
            continue

    _gone, alive = psutil.wait_procs(victims, timeout=grace_seconds)
    for process in alive:
        try:
            process.kill()
        except psutil.NoSuchProcess:
            continue
    if alive:
        psutil.wait_procs(alive, timeout=grace_seconds)
        logger.warning(
            "force-killed stage processes",
            extra={"root_pid": pid, "killed": sorted(process.pid for process in alive)},
        )
    return len(victims)


__all__ = ["kill_process_tree"]
