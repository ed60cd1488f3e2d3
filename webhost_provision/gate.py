"""
Validate-then-commit gate.

Changes to configuration that can cut off remote access (sshd, nginx,
firewall rules) are staged on disk, checked with the consumer's own
validator, and only then activated. A failed validation restores every
watched path to its exact pre-stage state and stops the run.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional, Tuple

from webhost_provision.errors import CommitError, ExecutionError, StagedConfigError
from webhost_provision.state import StateStore

logger = logging.getLogger(__name__)


class StagedFiles:
    """Point-in-time copy of a set of paths (regular files or symlinks)."""

    def __init__(self, paths: Iterable[Path]):
        self.paths = [Path(p) for p in paths]
        self._saved: Dict[Path, Tuple[str, object, int]] = {}

    def snapshot(self) -> "StagedFiles":
        for path in self.paths:
            if path.is_symlink():
                self._saved[path] = ("link", os.readlink(path), 0)
            elif path.is_file():
                self._saved[path] = ("file", path.read_bytes(), path.stat().st_mode & 0o7777)
            else:
                self._saved[path] = ("absent", None, 0)
        return self

    def restore(self) -> None:
        for path, (kind, payload, mode) in self._saved.items():
            if path.is_symlink() or path.exists():
                if path.is_dir() and not path.is_symlink():
                    logger.warning(f"Not restoring {path}: it is now a directory")
                    continue
                path.unlink()
            if kind == "link":
                os.symlink(payload, path)
            elif kind == "file":
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(payload)
                os.chmod(path, mode)
            logger.info(f"Restored {path} ({kind})")


@dataclass
class ConfigGate:
    """
    One guarded configuration change.

    Args:
        name: Human readable name used in log lines and errors
        stage: Writes the new configuration; returns True if anything changed
        validate: Runs the consumer's validator; returns True on success
        commit: Activates the validated configuration (reload/restart)
        watch: Paths the stage step may touch; restored on validation failure
        revert: Optional explicit revert action, used instead of the snapshot
        state: State store that records success
        state_key: Key written on success
        state_value: Value written on success
    """

    name: str
    stage: Callable[[], bool]
    validate: Callable[[], bool]
    commit: Callable[[], None]
    watch: Iterable[Path] = field(default_factory=tuple)
    revert: Optional[Callable[[], None]] = None
    state: Optional[StateStore] = None
    state_key: Optional[str] = None
    state_value: Optional[str] = None

    def _revert(self, snapshot: StagedFiles) -> None:
        logger.warning(f"Reverting staged {self.name} configuration")
        if self.revert is not None:
            self.revert()
        else:
            snapshot.restore()

    def _validate(self) -> bool:
        try:
            return bool(self.validate())
        except ExecutionError as e:
            logger.error(f"{self.name} validator could not run: {e}")
            return False

    def apply(self) -> bool:
        """
        Run the gate. Returns True when a new configuration was committed.

        Raises:
            StagedConfigError: Validation failed; the staged change was reverted
            CommitError: Validation passed but the service refused to activate it
        """
        snapshot = StagedFiles(self.watch).snapshot()
        try:
            changed = self.stage()
        except Exception:
            self._revert(snapshot)
            raise

        if not changed:
            logger.info(f"{self.name} configuration already in place")
            self._record()
            return False

        if not self._validate():
            self._revert(snapshot)
            raise StagedConfigError(
                f"{self.name} configuration failed validation; staged change reverted"
            )
        logger.info(f"{self.name} configuration valid")

        try:
            self.commit()
        except ExecutionError as e:
            logger.error(
                f"{self.name} configuration is valid but could not be activated: {e}"
            )
            raise CommitError(
                f"{self.name} configuration is valid but activation failed: {e}. "
                "The validated files were kept; fix the service and re-run."
            ) from e

        self._record()
        return True

    def _record(self) -> None:
        if self.state is not None and self.state_key:
            self.state.put(self.state_key, self.state_value or "")
