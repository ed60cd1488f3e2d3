"""
Durable record of completed provisioning steps.

The store is a single ``KEY=value`` file readable only by its owner. Every
key appears at most once: writing a key removes its previous line and
appends the new one.
"""

import datetime
import fcntl
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Union

logger = logging.getLogger(__name__)

STATE_FILE_MODE = 0o600


def timestamp() -> str:
    """Timestamp format used for completion markers."""
    return datetime.datetime.now().strftime("%Y%m%d_%H%M%S")


class StateStore:
    """Key/value record of what has been applied to this host."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold an exclusive lock on a sidecar file while rewriting the store."""
        lock_path = self.path.with_name(self.path.name + ".lock")
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        with open(lock_path, "a+") as lock_handle:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)

    def _read_lines(self) -> list:
        if not self.path.is_file():
            return []
        return self.path.read_text().splitlines()

    def _write_lines(self, lines: list) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            os.fchmod(fd, STATE_FILE_MODE)
            with os.fdopen(fd, "w") as f:
                f.write("".join(f"{line}\n" for line in lines))
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def put(self, key: str, value: str) -> None:
        """Replace any previous entry for ``key`` with ``key=value``."""
        if not key or "=" in key or "\n" in key:
            raise ValueError(f"Invalid state key: {key!r}")
        value = str(value).replace("\n", " ")
        with self._locked():
            prefix = f"{key}="
            current = self._read_lines()
            if [line for line in current if line.startswith(prefix)] == [f"{key}={value}"]:
                return
            lines = [line for line in current if not line.startswith(prefix)]
            lines.append(f"{key}={value}")
            self._write_lines(lines)
        logger.debug(f"State {key}={value}")

    def get(self, key: str) -> Optional[str]:
        """Most recently written value for ``key``, or None when absent."""
        prefix = f"{key}="
        value = None
        for line in self._read_lines():
            if line.startswith(prefix):
                value = line[len(prefix):]
        return value

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def mark_complete(self, key: str) -> str:
        """Record a completion timestamp for ``key``."""
        ts = timestamp()
        self.put(key, ts)
        return ts

    def items(self) -> Dict[str, str]:
        entries: Dict[str, str] = {}
        for line in self._read_lines():
            key, sep, value = line.partition("=")
            if sep:
                entries[key] = value
        return entries
