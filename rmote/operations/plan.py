"""
Sync plan model: remote operations and the index of last-known remote kinds
"""
import posixpath
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set


class OpKind(str, Enum):
    """Remote operations a plan can contain."""

    MKDIR = "mkdir"
    PUT = "put"
    CHMOD = "chmod"
    RM_FILE = "rm_file"
    RM_DIR = "rm_dir_recursive"


_LABELS = {
    OpKind.MKDIR: "MkDir",
    OpKind.PUT: "PutFile",
    OpKind.CHMOD: "Chmod",
    OpKind.RM_FILE: "RmFile",
    OpKind.RM_DIR: "RmDirRecursive",
}


@dataclass(frozen=True)
class Operation:
    """One idempotent remote operation on a root-relative posix path."""

    kind: OpKind
    path: str
    mode: Optional[int] = None
    size: Optional[int] = None
    mtime: Optional[float] = None
    only_if_changed: bool = False

    def __str__(self) -> str:
        if self.mode is None:
            return f"{_LABELS[self.kind]}({self.path})"
        return f"{_LABELS[self.kind]}({self.path}, {self.mode:o})"


SyncPlan = List[Operation]


def mkdir(path: str, mode: int) -> Operation:
    return Operation(OpKind.MKDIR, path, mode)


def put(path: str, mode: int, size: Optional[int] = None,
        mtime: Optional[float] = None, only_if_changed: bool = False) -> Operation:
    return Operation(OpKind.PUT, path, mode, size, mtime, only_if_changed)


def chmod(path: str, mode: int) -> Operation:
    return Operation(OpKind.CHMOD, path, mode)


def rm_file(path: str) -> Operation:
    return Operation(OpKind.RM_FILE, path)


def rm_dir(path: str) -> Operation:
    return Operation(OpKind.RM_DIR, path)


def ancestors(rel: str) -> List[str]:
    """'a/b/c' → ['a', 'a/b']"""
    out = []
    parent = posixpath.dirname(rel)
    while parent:
        out.append(parent)
        parent = posixpath.dirname(parent)
    out.reverse()
    return out


def is_under(rel: str, parent: str) -> bool:
    """True if *rel* lies strictly below *parent*."""
    return rel.startswith(parent + "/")


def format_plan(plan: Iterable[Operation]) -> str:
    return "[" + ", ".join(str(op) for op in plan) + "]"


class RemoteIndex:
    """
    What this process has successfully created or removed on the remote.

    Starts empty on every run. Recorded kinds decide whether a vanished path
    is removed as a file or as a directory tree; removed directory trees are
    remembered so later removals of their children are recognised as already
    done.
    """

    FILE = "file"
    DIR = "dir"

    def __init__(self):
        self._kinds: Dict[str, str] = {}
        self._removed_dirs: Set[str] = set()

    def kind_of(self, rel: str) -> Optional[str]:
        return self._kinds.get(rel)

    def is_subsumed(self, rel: str) -> bool:
        """True if an ancestor of *rel* was removed as a whole tree since."""
        if rel in self._kinds:
            return False
        return any(a in self._removed_dirs for a in ancestors(rel))

    def record(self, op: Operation):
        """Update the index after *op* succeeded."""
        if op.kind == OpKind.MKDIR:
            self._mark_present(op.path, self.DIR)
        elif op.kind == OpKind.PUT:
            self._mark_present(op.path, self.FILE)
        elif op.kind == OpKind.RM_FILE:
            self._kinds.pop(op.path, None)
        elif op.kind == OpKind.RM_DIR:
            self._drop_tree(op.path)
            self._removed_dirs = {d for d in self._removed_dirs if not is_under(d, op.path)}
            self._removed_dirs.add(op.path)

    def _mark_present(self, rel: str, kind: str):
        if kind == self.FILE:
            # a file replacing a directory takes its whole subtree with it
            self._drop_tree(rel)
        for parent in ancestors(rel):
            self._kinds[parent] = self.DIR
            self._removed_dirs.discard(parent)
        self._kinds[rel] = kind
        self._removed_dirs.discard(rel)

    def _drop_tree(self, rel: str):
        for key in [k for k in self._kinds if k == rel or is_under(k, rel)]:
            del self._kinds[key]

    def __len__(self) -> int:
        return len(self._kinds)
