"""
Guarded file mutation.

Every mutating helper in this module backs up a pre-existing file before it
changes it and leaves the file untouched (no backup, no write) when the
requested change is already in place. Third-party configuration files are
edited through ``ConfigLines``: the file is parsed into lines, the edit is
applied to the line list, and the result is written back in one piece.
"""

import datetime
import logging
import os
import re
import shutil
from pathlib import Path
from typing import List, Optional, Pattern, Tuple, Union

from webhost_provision.errors import BlockAnchorError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def begin_marker(tag: str) -> str:
    return f"# BEGIN {tag}"


def end_marker(tag: str) -> str:
    return f"# END {tag}"


# ----------------------------------------------------------------
# Line-addressable view of a configuration file
# ----------------------------------------------------------------
class ConfigLines:
    """A configuration file held as a list of lines (without newlines)."""

    def __init__(self, lines: Optional[List[str]] = None, trailing_newline: bool = True):
        self.lines: List[str] = list(lines or [])
        self.trailing_newline = trailing_newline

    @classmethod
    def parse(cls, text: str) -> "ConfigLines":
        return cls(text.splitlines(), trailing_newline=text.endswith("\n") or not text)

    def render(self) -> str:
        text = "\n".join(self.lines)
        if self.lines and self.trailing_newline:
            text += "\n"
        return text

    def find_block(self, tag: str) -> Optional[Tuple[int, int]]:
        """Index range (begin, end) inclusive of the markers, or None."""
        begin = end_marker_line = None
        for i, line in enumerate(self.lines):
            stripped = line.strip()
            if begin is None and stripped == begin_marker(tag):
                begin = i
            elif begin is not None and stripped == end_marker(tag):
                end_marker_line = i
                break
        if begin is None:
            return None
        if end_marker_line is None:
            raise BlockAnchorError(f"Managed block {tag} has no end marker")
        return begin, end_marker_line

    def has_block(self, tag: str, detect: Optional[str] = None) -> bool:
        if any(line.strip() == begin_marker(tag) for line in self.lines):
            return True
        return bool(detect) and any(detect in line for line in self.lines)

    def find_anchor(self, anchor: Pattern, after: Optional[Pattern] = None) -> int:
        """Index of the first line matching ``anchor`` (following ``after`` if given)."""
        start = 0
        if after is not None:
            for i, line in enumerate(self.lines):
                if after.search(line):
                    start = i + 1
                    break
            else:
                raise BlockAnchorError(f"Section matching {after.pattern!r} not found")
        for i in range(start, len(self.lines)):
            if anchor.search(self.lines[i]):
                return i
        raise BlockAnchorError(f"Anchor line matching {anchor.pattern!r} not found")

    def insert_block(
        self,
        tag: str,
        body: str,
        anchor: Pattern,
        after: Optional[Pattern] = None,
        detect: Optional[str] = None,
    ) -> bool:
        """Insert ``body`` wrapped in markers right before the anchor line."""
        if self.has_block(tag, detect):
            return False
        index = self.find_anchor(anchor, after)
        block = [begin_marker(tag)] + body.strip("\n").splitlines() + [end_marker(tag)]
        self.lines[index:index] = block
        return True

    def remove_block(self, tag: str) -> bool:
        span = self.find_block(tag)
        if span is None:
            return False
        begin, end = span
        del self.lines[begin:end + 1]
        return True

    def remove_matching(self, pattern: Pattern) -> int:
        kept = [line for line in self.lines if not pattern.search(line)]
        removed = len(self.lines) - len(kept)
        self.lines = kept
        return removed

    def insert_after_first(self, pattern: Pattern, new_line: str) -> bool:
        """Insert ``new_line`` after the first line matching ``pattern``."""
        if any(line == new_line for line in self.lines):
            return False
        for i, line in enumerate(self.lines):
            if pattern.search(line):
                self.lines.insert(i + 1, new_line)
                return True
        raise BlockAnchorError(f"Anchor line matching {pattern.pattern!r} not found")

    def set_directive(self, key: str, value: str, separator: str = " ") -> bool:
        """Rewrite every active ``key`` line to ``key<separator>value``."""
        pattern = re.compile(rf"^{re.escape(key)}\b")
        new_line = f"{key}{separator}{value}"
        changed = False
        found = False
        for i, line in enumerate(self.lines):
            if pattern.match(line):
                found = True
                if line != new_line:
                    self.lines[i] = new_line
                    changed = True
        if not found:
            self.lines.append(new_line)
            changed = True
        return changed


# ----------------------------------------------------------------
# File level operations
# ----------------------------------------------------------------
def backup(path: PathLike, directory: Optional[PathLike] = None) -> Optional[Path]:
    """
    Copy ``path`` to ``<path>.backup.<timestamp>``.

    Returns the backup path, or None when ``path`` does not exist. An
    existing backup is never overwritten; a counter suffix is added instead.
    ``directory`` puts the copy somewhere other than next to the original,
    for files in directories where every entry is read or executed. Backups
    are never executable.
    """
    path = Path(path)
    if not path.is_file():
        return None
    directory = Path(directory) if directory is not None else path.parent
    directory.mkdir(parents=True, exist_ok=True)
    ts = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
    target = directory / f"{path.name}.backup.{ts}"
    counter = 1
    while target.exists():
        target = directory / f"{path.name}.backup.{ts}_{counter}"
        counter += 1
    shutil.copy2(path, target)
    os.chmod(target, target.stat().st_mode & 0o666)
    logger.info(f"Backed up {path} to {target}")
    return target


def read_text(path: PathLike) -> Optional[str]:
    path = Path(path)
    return path.read_text() if path.is_file() else None


def write_file(
    path: PathLike,
    content: str,
    mode: Optional[int] = None,
    backup_dir: Optional[PathLike] = None,
) -> bool:
    """
    Write ``content`` to ``path`` unless it already holds exactly that.

    Returns True when the file was written. A pre-existing file is backed
    up first, into ``backup_dir`` when given.
    """
    path = Path(path)
    current = read_text(path)
    if current == content:
        if mode is not None and (path.stat().st_mode & 0o7777) != mode:
            os.chmod(path, mode)
        return False
    if current is not None:
        backup(path, backup_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    if mode is not None:
        os.chmod(path, mode)
    logger.debug(f"Wrote {path}")
    return True


def _apply(path: PathLike, edit) -> bool:
    """Parse ``path``, apply ``edit`` to its lines and write back if it changed."""
    path = Path(path)
    original = read_text(path)
    config = ConfigLines.parse(original or "")
    edit(config)
    rendered = config.render()
    if rendered == (original or ""):
        return False
    if original is not None:
        backup(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(rendered)
    return True


def upsert_line(path: PathLike, line: str, prepend: bool = False) -> bool:
    """Add ``line`` unless an identical line exists. Returns whether it was added."""

    def edit(config: ConfigLines) -> bool:
        if line in config.lines:
            return False
        if prepend:
            config.lines.insert(0, line)
        else:
            config.lines.append(line)
        return True

    return _apply(path, edit)


def insert_block(
    path: PathLike,
    tag: str,
    body: str,
    anchor: Union[str, Pattern],
    after: Union[str, Pattern, None] = None,
    detect: Optional[str] = None,
) -> bool:
    """
    Insert a ``# BEGIN tag`` / ``# END tag`` block immediately before ``anchor``.

    Nothing happens when the block (or the ``detect`` substring) is already
    present. Raises BlockAnchorError when the anchor line is missing.
    """
    path = Path(path)
    if not path.is_file():
        raise BlockAnchorError(f"{path} does not exist; cannot place block {tag}")
    anchor_re = re.compile(anchor) if isinstance(anchor, str) else anchor
    after_re = re.compile(after) if isinstance(after, str) else after
    inserted = _apply(
        path, lambda config: config.insert_block(tag, body, anchor_re, after_re, detect)
    )
    if inserted:
        logger.info(f"Inserted managed block {tag} into {path}")
    else:
        logger.info(f"Managed block {tag} already present in {path}")
    return inserted


def remove_block(path: PathLike, tag: str) -> bool:
    if not Path(path).is_file():
        return False
    return _apply(path, lambda config: config.remove_block(tag))


def remove_matching(path: PathLike, pattern: Union[str, Pattern]) -> bool:
    """Delete every line matching ``pattern``. Returns whether anything was removed."""
    if not Path(path).is_file():
        return False
    pattern_re = re.compile(pattern) if isinstance(pattern, str) else pattern
    return _apply(path, lambda config: config.remove_matching(pattern_re) > 0)


def insert_after_first(path: PathLike, pattern: Union[str, Pattern], line: str) -> bool:
    pattern_re = re.compile(pattern) if isinstance(pattern, str) else pattern
    return _apply(path, lambda config: config.insert_after_first(pattern_re, line))


def set_directives(path: PathLike, directives: dict, separator: str = " ") -> bool:
    """Set ``key<separator>value`` for each directive, replacing existing lines."""

    def edit(config: ConfigLines) -> bool:
        changed = False
        for key, value in directives.items():
            changed = config.set_directive(key, value, separator) or changed
        return changed

    return _apply(path, edit)


def ensure_directory(path: PathLike, mode: int = 0o755) -> Path:
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    if (path.stat().st_mode & 0o7777) != mode:
        os.chmod(path, mode)
    return path
