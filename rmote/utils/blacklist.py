"""
Blacklist rules (the path filter) and .rmoteignore parsing

A rule without a slash matches a path component by name anywhere in the
tree; a rule with a slash, or an absolute path, is a prefix anchored at the
local root.
Both accept the *, ? and ** wildcards. A match on a directory excludes
everything below it.
"""
import os
import re
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional, Union

from ..config import IGNORE_FILE, SyncConfig
from ..errors import FilterConfigInvalid

PathLike = Union[str, os.PathLike]


def _glob_to_regex(p: str) -> str:
    escaped = re.escape(p)
    escaped = escaped.replace(r"\*\*", "§DS§")
    escaped = escaped.replace(r"\*", "[^/]*")
    escaped = escaped.replace(r"\?", "[^/]")
    return escaped.replace("§DS§", ".*")


def normalize_rule(raw: str, local_root: Path) -> str:
    """Return the rule as a root-relative posix pattern, or raise FilterConfigInvalid."""
    rule = raw.strip().replace("\\", "/")
    if not rule:
        raise FilterConfigInvalid(raw, "empty rule")
    if "\x00" in rule:
        raise FilterConfigInvalid(raw, "contains a NUL byte")

    if rule.startswith("/"):
        try:
            rule = PurePosixPath(rule).relative_to(local_root.as_posix()).as_posix()
        except ValueError:
            raise FilterConfigInvalid(raw, f"absolute path outside {local_root}") from None

    if rule.endswith("/**"):
        rule = rule[:-3]
    parts = [part for part in rule.split("/") if part not in ("", ".")]
    if ".." in parts:
        raise FilterConfigInvalid(raw, "'..' is not allowed")
    if not parts:
        raise FilterConfigInvalid(raw, "rule would exclude the whole tree")
    return "/".join(parts)


def compile_rule(raw: str, local_root: Path):
    """Compile a blacklist rule into a regex matched against root-relative paths."""
    rule = normalize_rule(raw, local_root)
    body = _glob_to_regex(rule)
    # absolute rules stay anchored even when they name a single component
    if "/" in rule or raw.strip().replace("\\", "/").startswith("/"):
        pattern = "^" + body + "(?:/|$)"
    else:
        pattern = "(?:^|/)" + body + "(?:/|$)"
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise FilterConfigInvalid(raw, str(exc)) from exc


def load_ignore_file(root: Path) -> List[str]:
    """Load blacklist rules from the .rmoteignore file at the local root."""
    f = root / IGNORE_FILE
    if not f.is_file():
        return []
    rules = []
    for line in f.read_text(encoding="utf-8", errors="replace").splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            rules.append(line)
    return rules


class Blacklist:
    """Immutable set of rules deciding which local paths are never mirrored."""

    def __init__(self, rules: Iterable[str], local_root: PathLike):
        self.local_root = Path(os.path.abspath(local_root))
        self.rules = tuple(rules)
        self._patterns = [compile_rule(r, self.local_root) for r in self.rules]

    @classmethod
    def from_config(cls, config: SyncConfig) -> "Blacklist":
        rules = list(config.blacklist) + load_ignore_file(config.local_root)
        return cls(rules, config.local_root)

    def relative(self, path: PathLike) -> Optional[str]:
        """
        Root-relative posix form of *path* ("" for the root itself).
        Relative inputs are taken as already relative to the root.
        Returns None for paths outside the root.
        """
        p = os.fspath(path)
        if isinstance(p, bytes):
            p = os.fsdecode(p)
        if os.path.isabs(p):
            p = os.path.relpath(os.path.abspath(p), self.local_root)
        rel = PurePosixPath(p.replace(os.sep, "/")).as_posix()
        if rel == ".":
            return ""
        if rel == ".." or rel.startswith("../"):
            return None
        return rel

    def is_blacklisted(self, path: PathLike) -> bool:
        rel = self.relative(path)
        if not rel:
            return False
        return any(p.search(rel) for p in self._patterns)

    def __len__(self) -> int:
        return len(self.rules)
