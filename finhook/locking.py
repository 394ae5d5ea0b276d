"""Named-file locks shared by the CLI and the background service."""

from __future__ import annotations

import fcntl
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from finhook.errors import classify_exception


def lock_path_for(path: Path) -> Path:
    """Return the sibling lock file used to serialize writers of ``path``."""
    return path.parent / f".{path.name}.lock"


@contextmanager
def file_lock(path: Path, shared: bool = False) -> Iterator[None]:
    """Hold an advisory fcntl lock on the lock file that guards ``path``.

    Exclusive by default; ``shared=True`` allows concurrent readers. Failing to
    create the lock file raises a classified storage error.
    """
    lock_file = lock_path_for(path)
    try:
        lock_file.parent.mkdir(parents=True, exist_ok=True)
        lf = open(lock_file, "a")
    except OSError as exc:
        raise classify_exception(exc, file_path=str(lock_file)) from exc
    with lf:
        fcntl.flock(lf, fcntl.LOCK_SH if shared else fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lf, fcntl.LOCK_UN)
