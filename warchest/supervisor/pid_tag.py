# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0

"""
Existence-based PID-tag lock.

A tag file at ``<dir>/<tag>`` containing the owner's process id marks a
singleton resource (a wallet, a stream subscription, a vector index) as
in use.  Creation is exclusive; the file's presence *is* the lock.

Locks left behind by a crashed holder are not reclaimed automatically.
Operators clear them with ``warchest locks release <tag>``.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from warchest.exceptions import LockConflictError, ValidationError
from warchest.time_utils import now_ms

logger = logging.getLogger(__name__)


@dataclass
class PidTag:
    tag: str
    tag_path: Path
    owner_pid: int
    created_at: int
    _released: bool = field(default=False, repr=False)

    @property
    def released(self) -> bool:
        return self._released

    async def release(self) -> None:
        """Delete the tag file.  A second call is a no-op."""
        if self._released:
            return
        self._released = True
        await asyncio.to_thread(self.tag_path.unlink, missing_ok=True)
        logger.debug("Released PID tag %s", self.tag)

    async def __aenter__(self) -> PidTag:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.release()


def _validate_tag(tag: str) -> None:
    if not tag or not tag.strip():
        raise ValidationError("A non-empty tag is required to create a PID tag")
    if "/" in tag or "\\" in tag or tag in (".", ".."):
        raise ValidationError(f"Invalid PID tag name: {tag!r}")


def _create_exclusive(tag: str, path: Path, pid: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        try:
            holder = path.read_text(encoding="utf-8").strip() or None
        except OSError:
            holder = None
        raise LockConflictError(tag, holder) from None
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(f"{pid}\n")


async def acquire_pid_tag(tag: str, lock_dir: Path, pid: int | None = None) -> PidTag:
    """Create ``<lock_dir>/<tag>`` exclusively and return its handle.

    Raises:
        ValidationError: If *tag* is empty or not a plain file name.
        LockConflictError: If the tag file already exists.  The existing
            file is left untouched.
    """
    _validate_tag(tag)
    owner = pid if pid is not None else os.getpid()
    path = Path(lock_dir) / tag
    await asyncio.to_thread(_create_exclusive, tag, path, owner)
    logger.info("Acquired PID tag %s (pid %d)", tag, owner)
    return PidTag(tag=tag, tag_path=path, owner_pid=owner, created_at=now_ms())


def read_pid_tag(tag: str, lock_dir: Path) -> int | None:
    """Return the pid recorded for *tag*, or ``None`` when not held."""
    _validate_tag(tag)
    path = Path(lock_dir) / tag
    try:
        raw = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("PID tag %s holds unreadable content: %r", tag, raw)
        return None


def list_pid_tags(lock_dir: Path) -> dict[str, int | None]:
    """Map every tag currently present in *lock_dir* to its recorded pid."""
    lock_dir = Path(lock_dir)
    if not lock_dir.is_dir():
        return {}
    return {
        p.name: read_pid_tag(p.name, lock_dir)
        for p in sorted(lock_dir.iterdir())
        if p.is_file()
    }


def force_release_pid_tag(tag: str, lock_dir: Path) -> bool:
    """Remove a tag regardless of owner.  Returns whether a file was removed."""
    _validate_tag(tag)
    path = Path(lock_dir) / tag
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    logger.warning("Force-released PID tag %s", tag)
    return True


def is_pid_alive(pid: int | None) -> bool:
    """True when a process with *pid* exists (used for display only)."""
    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
