"""Persistent sync state for a vault.

Tracks the highest Apple Books annotation primary key already exported (the
watermark). State is stored as JSON next to the vault's notes and written
atomically so an interrupted save never leaves a corrupt file behind.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Union

log = logging.getLogger(__name__)

STATE_FILENAME = "booksync_state.json"
LOCK_FILENAME = "booksync.lock"


def state_path(vault_dir: Union[str, Path]) -> Path:
    return Path(vault_dir) / STATE_FILENAME


def lock_path(vault_dir: Union[str, Path]) -> Path:
    return Path(vault_dir) / LOCK_FILENAME


def _parse_last_pk(raw: bytes, path: Path) -> int:
    """Return last_pk from the state file text, or 0 if it is unusable."""
    try:
        data = json.loads(raw)
    except ValueError as e:
        log.warning("State file %s is not valid JSON (%s), starting from PK 0", path, e)
        return 0
    if not isinstance(data, dict):
        log.warning("State file %s does not hold an object, starting from PK 0", path)
        return 0
    if "last_pk" not in data:
        log.warning("State file %s has no last_pk, starting from PK 0", path)
        return 0
    last_pk = data["last_pk"]
    # bool is an int subclass; reject it along with floats and strings
    if isinstance(last_pk, bool) or not isinstance(last_pk, int) or last_pk < 0:
        log.warning("State file %s has invalid last_pk %r, starting from PK 0", path, last_pk)
        return 0
    return last_pk


def _save_raw(path: Path, data: Dict[str, Any]) -> None:
    """Write state atomically: write to temp file, then rename."""
    fd, tmp = tempfile.mkstemp(
        dir=path.parent, prefix=".booksync_state_", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        os.replace(tmp, path)
    except BaseException:
        os.unlink(tmp)
        raise


class State:
    """The watermark for one vault."""

    def __init__(self, path: Path, last_pk: int = 0) -> None:
        self.path = path
        self._last_pk = last_pk

    @classmethod
    def load(cls, vault_dir: Union[str, Path]) -> "State":
        """Load the state for a vault.

        A missing or malformed state file yields a watermark of 0. Other read
        errors propagate as OSError.
        """
        path = state_path(vault_dir)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            log.info("No state file at %s, starting from PK 0", path)
            return cls(path)
        last_pk = _parse_last_pk(raw, path)
        log.debug("Loaded state from %s: last PK %d", path, last_pk)
        return cls(path, last_pk)

    @property
    def last_pk(self) -> int:
        return self._last_pk

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        _save_raw(self.path, {"last_pk": self._last_pk})
        log.debug("Saved state to %s: last PK %d", self.path, self._last_pk)

    def advance(self, pk: int) -> bool:
        """Persist pk as the new watermark if it is higher than the current one.

        The in-memory value only moves once the file has been replaced, so a
        failed save (OSError) leaves the watermark where it was.
        Returns True if the watermark moved.
        """
        if pk <= self._last_pk:
            return False
        previous = self._last_pk
        self.path.parent.mkdir(parents=True, exist_ok=True)
        _save_raw(self.path, {"last_pk": pk})
        self._last_pk = pk
        log.info("Advanced last PK from %d to %d", previous, pk)
        return True


def _try_create_lock(path: Path) -> bool:
    """Attempt to create the lock file. Returns True if successful."""
    try:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        os.write(fd, str(os.getpid()).encode())
        os.close(fd)
        return True
    except FileExistsError:
        return False


def acquire_lock(vault_dir: Union[str, Path]) -> bool:
    """Try to acquire the vault lock. Returns True if acquired, False if already held.

    If the lock is held by a dead process (stale lock), it is automatically
    removed and re-acquired.
    """
    path = lock_path(vault_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    if _try_create_lock(path):
        return True

    # Lock exists, check if the holding process is still alive
    try:
        pid = int(path.read_text().strip())
        os.kill(pid, 0)  # signal 0: check existence only
    except (ValueError, OSError):
        log.warning("Removing stale lock %s (previous process died)", path)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        return _try_create_lock(path)

    return False


def release_lock(vault_dir: Union[str, Path]) -> None:
    """Release the vault lock."""
    try:
        lock_path(vault_dir).unlink()
    except FileNotFoundError:
        pass
