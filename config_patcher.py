#!/usr/bin/env python3
"""
Config Patcher

Idempotent replace-or-append editing of line-oriented configuration files such as
/etc/ssh/sshd_config and /etc/sysctl.conf.

For every requested directive the first matching line (active or commented out)
is rewritten in canonical form; if no line matches, the directive is appended.
Everything else in the file is left exactly as it was, so running the same patch
twice is a no-op.

Features:
  • Two line dialects: "key value" (sshd) and "key=value" (sysctl)
  • Per-directive results (inserted / replaced / unchanged)
  • Copy-on-first-write backups (<file>.bak is never overwritten)
  • Atomic writes through a temporary file and os.replace
"""

import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

logger = logging.getLogger("vps_init")

# ------------------------------
# Configuration
# ------------------------------
BACKUP_SUFFIX = ".bak"
DEFAULT_NEWLINE = "\n"
COMMENT_MARKER = "#"

PathLike = Union[str, Path]


# ------------------------------
# Custom Exceptions
# ------------------------------
class ConfigPatchError(Exception):
    """Base exception for configuration patching errors."""

    pass


class ConfigNotFoundError(ConfigPatchError):
    """Raised when the configuration file does not exist."""

    pass


class ConfigPermissionError(ConfigPatchError):
    """Raised when the configuration file cannot be read or replaced."""

    pass


class ConfigIOError(ConfigPatchError):
    """Raised on any other read or write failure."""

    pass


class MalformedDirectiveError(ConfigPatchError):
    """Raised when a directive key or value cannot be written as a single line."""

    pass


# ------------------------------
# Enums and Data Models
# ------------------------------
class PatchAction(str, Enum):
    """What happened to a directive during a patch run."""

    INSERTED = "inserted"
    REPLACED = "replaced"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class Dialect:
    """Layout of a directive line in a particular file format."""

    name: str
    separator: str
    match_template: str
    forbidden_key_chars: str = COMMENT_MARKER

    def pattern(self, key: str) -> "re.Pattern[str]":
        return re.compile(self.match_template.format(key=re.escape(key)))

    def render(self, key: str, value: str) -> str:
        return f"{key}{self.separator}{value}"

    def value_of(self, body: str) -> str:
        """Extract the value part of a matched directive line."""
        text = body.strip().lstrip(COMMENT_MARKER).strip()
        if self.separator.strip():
            return text.split(self.separator.strip(), 1)[1].strip()
        parts = text.split(None, 1)
        return parts[1].strip() if len(parts) > 1 else ""


SSHD = Dialect(name="sshd", separator=" ", match_template=r"^\s*#?\s*{key}\s+.*$")
SYSCTL = Dialect(
    name="sysctl",
    separator="=",
    match_template=r"^\s*#?\s*{key}\s*=.*$",
    forbidden_key_chars=COMMENT_MARKER + "=",
)
DIALECTS: Dict[str, Dialect] = {d.name: d for d in (SSHD, SYSCTL)}


@dataclass(frozen=True)
class Directive:
    """A single key/value setting to enforce."""

    key: str
    value: str

    def validate(self, dialect: Dialect = SSHD) -> "Directive":
        if not self.key:
            raise MalformedDirectiveError("Directive key is empty")
        if any(ch.isspace() for ch in self.key):
            raise MalformedDirectiveError(f"Directive key contains whitespace: {self.key!r}")
        bad = [ch for ch in dialect.forbidden_key_chars if ch in self.key]
        if bad:
            raise MalformedDirectiveError(
                f"Directive key {self.key!r} contains {''.join(bad)!r} "
                f"(not allowed in {dialect.name} files)"
            )
        if "\n" in self.value or "\r" in self.value:
            raise MalformedDirectiveError(f"Value for {self.key} spans multiple lines")
        return self


@dataclass
class DirectiveResult:
    """Outcome for one requested directive."""

    key: str
    value: str
    action: PatchAction
    line_number: int
    previous: Optional[str] = None
    disabled_lines: List[int] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.action != PatchAction.UNCHANGED

    @property
    def disabled_duplicates(self) -> int:
        return len(self.disabled_lines)


@dataclass
class PatchResult:
    """Results of patching one file."""

    path: Path
    dialect: str
    results: List[DirectiveResult] = field(default_factory=list)
    written: bool = False
    dry_run: bool = False
    backup_path: Optional[Path] = None

    @property
    def changed(self) -> bool:
        return any(r.changed for r in self.results)

    def count(self, action: PatchAction) -> int:
        return sum(1 for r in self.results if r.action == action)

    def summary(self) -> str:
        return (
            f"{len(self.results)} directive(s): "
            f"{self.count(PatchAction.INSERTED)} inserted, "
            f"{self.count(PatchAction.REPLACED)} replaced, "
            f"{self.count(PatchAction.UNCHANGED)} unchanged"
        )


DirectiveLike = Union[Directive, Tuple[str, str]]


# ------------------------------
# Line Helpers
# ------------------------------
def split_lines(content: str) -> List[str]:
    """Split text into lines, each keeping its terminator. Only '\\n' ends a line."""
    if not content:
        return []
    pieces = content.split("\n")
    lines = [piece + "\n" for piece in pieces[:-1]]
    if pieces[-1]:
        lines.append(pieces[-1])
    return lines


def _split_terminator(line: str) -> Tuple[str, str]:
    if line.endswith("\r\n"):
        return line[:-2], "\r\n"
    if line.endswith("\n"):
        return line[:-1], "\n"
    return line, ""


def detect_newline(lines: Sequence[str]) -> str:
    for line in lines:
        terminator = _split_terminator(line)[1]
        if terminator:
            return terminator
    return DEFAULT_NEWLINE


def _is_active(body: str) -> bool:
    return not body.lstrip().startswith(COMMENT_MARKER)


def _coerce_directive(directive: DirectiveLike, dialect: Dialect) -> Directive:
    if not isinstance(directive, Directive):
        key, value = directive
        directive = Directive(key=str(key), value=str(value))
    return directive.validate(dialect)


def parse_directive(text: str, dialect: Dialect = SSHD) -> Directive:
    """
    Parse a command-line KEY=VALUE token into a Directive.

    The value is everything after the first '=', so sysctl values such as
    "net.ipv4.ip_local_port_range=1024 65535" survive intact.
    """
    key, sep, value = text.partition("=")
    if not sep:
        raise MalformedDirectiveError(f"Expected KEY=VALUE, got {text!r}")
    return Directive(key=key.strip(), value=value.strip()).validate(dialect)


# ------------------------------
# Core Patch Logic
# ------------------------------
def _find_first(lines: Sequence[str], pattern: "re.Pattern[str]") -> Optional[int]:
    for index, line in enumerate(lines):
        if pattern.match(_split_terminator(line)[0]):
            return index
    return None


def _disable_duplicates(lines: List[str], pattern: "re.Pattern[str]", start: int) -> List[int]:
    """Comment out active matches from start on; returns their 1-based line numbers."""
    disabled = []
    for index in range(start, len(lines)):
        body = _split_terminator(lines[index])[0]
        if pattern.match(body) and _is_active(body):
            lines[index] = COMMENT_MARKER + lines[index]
            disabled.append(index + 1)
    return disabled


def _apply_one(
    lines: List[str], directive: Directive, dialect: Dialect, newline: str
) -> DirectiveResult:
    pattern = dialect.pattern(directive.key)
    wanted = dialect.render(directive.key, directive.value)
    index = _find_first(lines, pattern)

    if index is None:
        if lines and not _split_terminator(lines[-1])[1]:
            lines[-1] += newline
        lines.append(wanted + newline)
        return DirectiveResult(
            key=directive.key,
            value=directive.value,
            action=PatchAction.INSERTED,
            line_number=len(lines),
        )

    body, terminator = _split_terminator(lines[index])
    previous = None
    if body != wanted:
        previous = body
        lines[index] = wanted + terminator
    # One active line per key.
    disabled = _disable_duplicates(lines, pattern, index + 1)
    action = PatchAction.REPLACED if previous is not None or disabled else PatchAction.UNCHANGED
    return DirectiveResult(
        key=directive.key,
        value=directive.value,
        action=action,
        line_number=index + 1,
        previous=previous,
        disabled_lines=disabled,
    )


def patch_lines(
    lines: Sequence[str],
    directives: Iterable[DirectiveLike],
    dialect: Dialect = SSHD,
) -> Tuple[List[str], List[DirectiveResult]]:
    """
    Apply directives to an in-memory copy of a file's lines.

    Args:
        lines: File lines, each with its original terminator.
        directives: Ordered (key, value) pairs or Directive objects.
        dialect: Line layout of the file.

    Returns:
        The new line list and one DirectiveResult per directive, in order.

    Raises:
        MalformedDirectiveError: If any directive is invalid. Raised before any
            line is touched.
    """
    parsed = [_coerce_directive(d, dialect) for d in directives]
    new_lines = list(lines)
    newline = detect_newline(new_lines)
    results = [_apply_one(new_lines, d, dialect, newline) for d in parsed]
    return new_lines, results


# ------------------------------
# File Operations
# ------------------------------
def read_config(path: PathLike) -> List[str]:
    """Read a configuration file into a list of terminator-preserving lines."""
    path = Path(path)
    if not path.exists():
        raise ConfigNotFoundError(f"Configuration file not found: {path}")
    if not path.is_file():
        raise ConfigNotFoundError(f"Not a regular file: {path}")
    try:
        with open(path, "r", encoding="utf-8", newline="") as f:
            content = f.read()
    except PermissionError as e:
        raise ConfigPermissionError(f"Cannot read {path}: {e}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigIOError(f"Failed to read {path}: {e}") from e
    return split_lines(content)


def check_writable(path: PathLike) -> None:
    """Ensure both the file and its directory allow an atomic replace."""
    path = Path(path)
    if not os.access(path, os.W_OK):
        raise ConfigPermissionError(f"No write permission for {path}")
    parent = path.parent
    if not os.access(parent, os.W_OK | os.X_OK):
        raise ConfigPermissionError(f"No write permission for directory {parent}")


def backup_once(path: PathLike, suffix: str = BACKUP_SUFFIX) -> Optional[Path]:
    """
    Copy a file to <path><suffix> unless that backup already exists.

    Returns:
        The backup path if one was created, otherwise None.
    """
    path = Path(path)
    backup = path.with_name(path.name + suffix)
    if backup.exists():
        logger.debug(f"Backup {backup} already present; keeping original copy.")
        return None
    try:
        shutil.copy2(path, backup)
    except PermissionError as e:
        raise ConfigPermissionError(f"Cannot back up {path} to {backup}: {e}") from e
    except OSError as e:
        raise ConfigIOError(f"Backup failed {path}: {e}") from e
    logger.info(f"Backed up {path} to {backup}")
    return backup


def _carry_over_metadata(source: Path, target: str) -> None:
    shutil.copymode(source, target)
    src_stat = os.stat(source)
    tmp_stat = os.stat(target)
    if (src_stat.st_uid, src_stat.st_gid) == (tmp_stat.st_uid, tmp_stat.st_gid):
        return
    try:
        os.chown(target, src_stat.st_uid, src_stat.st_gid)
    except PermissionError as e:
        logger.warning(
            f"Could not keep owner {src_stat.st_uid}:{src_stat.st_gid} of {source} "
            f"(new file owned by {tmp_stat.st_uid}:{tmp_stat.st_gid}): {e}"
        )


def atomic_write(path: PathLike, lines: Sequence[str]) -> None:
    """
    Replace a file's contents in one step.

    The new content goes to a temporary file in the same directory, is fsynced,
    inherits the original mode and ownership, and is then renamed over the
    original. On any failure the temporary file is removed and the original is
    left untouched. A symlinked path is followed so the link itself survives.
    """
    path = Path(path).resolve()
    try:
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
        )
    except PermissionError as e:
        raise ConfigPermissionError(f"Cannot create temporary file next to {path}: {e}") from e
    except OSError as e:
        raise ConfigIOError(f"Cannot create temporary file next to {path}: {e}") from e

    replaced = False
    try:
        try:
            f = os.fdopen(fd, "w", encoding="utf-8", newline="")
        except BaseException:
            os.close(fd)
            raise
        with f:
            f.writelines(lines)
            f.flush()
            os.fsync(f.fileno())
        _carry_over_metadata(path, tmp_path)
        os.replace(tmp_path, path)
        replaced = True
    except PermissionError as e:
        raise ConfigPermissionError(f"Failed to write {path}: {e}") from e
    except OSError as e:
        raise ConfigIOError(f"Failed to write {path}: {e}") from e
    finally:
        if not replaced and os.path.exists(tmp_path):
            os.unlink(tmp_path)


def apply_directives(
    path: PathLike,
    directives: Iterable[DirectiveLike],
    dialect: Dialect = SSHD,
    backup: bool = True,
    dry_run: bool = False,
) -> PatchResult:
    """
    Enforce directives in a configuration file.

    Args:
        path: File to patch.
        directives: Ordered (key, value) pairs or Directive objects.
        dialect: Line layout of the file (SSHD or SYSCTL).
        backup: Save <path>.bak before the first modification.
        dry_run: Compute results without writing anything.

    Returns:
        PatchResult with one entry per directive.

    Raises:
        MalformedDirectiveError, ConfigNotFoundError, ConfigPermissionError,
        ConfigIOError. The file is either fully updated or left untouched.
    """
    path = Path(path)
    parsed = [_coerce_directive(d, dialect) for d in directives]
    # Symlinks are followed: the backup, temp file and rename act on the real file.
    target = path.resolve()
    if target != path.absolute():
        logger.debug(f"{path} resolves to {target}")
    lines = read_config(target)
    if not dry_run:
        check_writable(target)

    new_lines, results = patch_lines(lines, parsed, dialect)
    outcome = PatchResult(path=path, dialect=dialect.name, results=results, dry_run=dry_run)

    for r in results:
        if r.action == PatchAction.UNCHANGED:
            logger.debug(f"{path}: {r.key} already set (line {r.line_number})")
        else:
            logger.info(f"{path}: {r.key} {r.action.value} (line {r.line_number})")
        if r.disabled_lines:
            logger.warning(
                f"{path}: commented out duplicate {r.key} on line(s) "
                f"{', '.join(str(n) for n in r.disabled_lines)}; review them, "
                f"e.g. overrides inside Match blocks"
            )

    if new_lines == lines:
        logger.debug(f"{path}: nothing to change")
        return outcome
    if dry_run:
        logger.info(f"{path}: dry run, {outcome.summary()}")
        return outcome

    if backup:
        outcome.backup_path = backup_once(target)
    atomic_write(target, new_lines)
    outcome.written = True
    logger.info(f"{path}: {outcome.summary()}")
    return outcome


def read_directive(path: PathLike, key: str, dialect: Dialect = SSHD) -> Optional[str]:
    """Return the value of the first active directive for key, or None."""
    Directive(key=key, value="").validate(dialect)
    pattern = dialect.pattern(key)
    for line in read_config(path):
        body = _split_terminator(line)[0]
        if pattern.match(body) and _is_active(body):
            return dialect.value_of(body)
    return None
