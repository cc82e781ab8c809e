"""
Tree differ: turns the local tree, or one observed change, into a SyncPlan
"""
import os
import stat
from pathlib import PurePosixPath
from typing import List, Optional

from ..config import SyncConfig
from ..core.watcher import ChangeBatch, ChangeEvent, ChangeKind
from ..utils.blacklist import Blacklist, PathLike
from ..utils.logging import vlog, warn
from .plan import OpKind, Operation, RemoteIndex, SyncPlan, is_under
from . import plan as ops


def local_mode(st: os.stat_result) -> int:
    return st.st_mode & 0o777


class TreeDiffer:
    """
    Plans remote operations from local state alone.

    Full-tree mode assumes nothing about the remote and emits MkDir/PutFile
    for every visible entry, parents first. Incremental mode plans a single
    change against what the local filesystem looks like right now, using the
    RemoteIndex to decide how vanished paths are removed.
    """

    def __init__(self, config: SyncConfig, blacklist: Blacklist, index: RemoteIndex):
        self.config = config
        self.blacklist = blacklist
        self.index = index

    def local_path(self, rel: str) -> str:
        root = str(self.config.local_root)
        return os.path.join(root, *rel.split("/")) if rel else root

    # ── entry point ────────────────────────────────────────────────────────

    def plan_for(self, path: PathLike = "", change: Optional[ChangeEvent] = None) -> SyncPlan:
        """Full-tree plan for *path* when *change* is None, else the plan for that change."""
        rel = self.blacklist.relative(path)
        if rel is None:
            vlog(f"  [OUTSIDE] {path}")
            return []
        if change is None:
            return self.full_tree(rel)
        return self.incremental(rel, change.kind, change.is_dir)

    # ── full-tree mode ─────────────────────────────────────────────────────

    def full_tree(self, rel: str = "") -> SyncPlan:
        plan: SyncPlan = []
        if rel:
            if self.blacklist.is_blacklisted(rel):
                return plan
            try:
                st = os.stat(self.local_path(rel))
            except OSError as exc:
                vlog(f"  [SKIP] {rel}: {exc}")
                return plan
            if not stat.S_ISDIR(st.st_mode):
                if stat.S_ISREG(st.st_mode):
                    plan.append(self._put(rel, st, full_tree=True))
                return plan
            if os.path.islink(self.local_path(rel)):
                vlog(f"  [SKIP] {rel}: directory symlink")
                return plan
            plan.append(ops.mkdir(rel, local_mode(st)))
        self._walk(rel, plan)
        return plan

    def _walk(self, rel: str, plan: SyncPlan):
        try:
            with os.scandir(self.local_path(rel)) as it:
                entries = sorted(it, key=lambda e: e.name)
        except FileNotFoundError:
            return
        except OSError as exc:
            warn(f"cannot list {rel or '.'}: {exc}")
            return

        for entry in entries:
            child = f"{rel}/{entry.name}" if rel else entry.name
            if self.blacklist.is_blacklisted(child):
                vlog(f"  [IGNORE] {child}")
                continue
            try:
                if entry.is_dir(follow_symlinks=False):
                    st = entry.stat(follow_symlinks=False)
                    plan.append(ops.mkdir(child, local_mode(st)))
                    self._walk(child, plan)
                    continue
                st = entry.stat()
            except OSError as exc:
                vlog(f"  [SKIP] {child}: {exc}")
                continue
            if stat.S_ISREG(st.st_mode):
                plan.append(self._put(child, st, full_tree=True))
            else:
                vlog(f"  [SKIP] {child}: not a regular file")

    def _put(self, rel: str, st: os.stat_result, full_tree: bool = False) -> Operation:
        return ops.put(rel, local_mode(st), size=st.st_size, mtime=st.st_mtime,
                       only_if_changed=full_tree and self.config.skip_unchanged)

    # ── incremental mode ───────────────────────────────────────────────────

    def removal_for(self, rel: str, is_dir: Optional[bool] = None) -> SyncPlan:
        """Remove *rel* remotely as the kind last recorded for it."""
        if self.index.is_subsumed(rel):
            vlog(f"  [SUBSUMED] {rel}")
            return []
        known = self.index.kind_of(rel)
        if known == RemoteIndex.DIR:
            return [ops.rm_dir(rel)]
        if known == RemoteIndex.FILE:
            return [ops.rm_file(rel)]
        if is_dir:
            return [ops.rm_dir(rel)]
        return [ops.rm_file(rel)]

    def incremental(self, rel: str, kind: ChangeKind, is_dir: Optional[bool] = None) -> SyncPlan:
        if not rel:
            # the root itself is never created or removed remotely
            return []
        if self.blacklist.is_blacklisted(rel):
            return []

        local = self.local_path(rel)
        try:
            st = os.stat(local)
        except OSError:
            # gone (or unreadable) by now: whatever the event said, it is a removal
            return self.removal_for(rel, is_dir)

        if stat.S_ISDIR(st.st_mode):
            if kind != ChangeKind.MODIFIED:
                # a new directory arrives with contents no event described
                return self.full_tree(rel)
            if os.path.islink(local):
                return []
            if self.index.kind_of(rel) == RemoteIndex.DIR:
                return [ops.chmod(rel, local_mode(st))]
            return [ops.mkdir(rel, local_mode(st))]
        if stat.S_ISREG(st.st_mode):
            return [self._put(rel, st)]
        vlog(f"  [SKIP] {rel}: not a regular file")
        return []

    def plan_batch(self, batch: ChangeBatch) -> SyncPlan:
        """
        Plan every entry of *batch*, parents before children. Entries below a
        directory that was walked or removed in this batch are already covered.
        """
        plan: SyncPlan = []
        walked: List[str] = []
        removed: List[str] = []
        keyed = []
        for event in batch:
            rel = self.blacklist.relative(event.path)
            if rel:
                keyed.append((PurePosixPath(rel).parts, rel, event))
        keyed.sort(key=lambda item: item[0])

        for _, rel, event in keyed:
            if self.blacklist.is_blacklisted(rel):
                continue
            if any(is_under(rel, d) for d in removed):
                continue
            if any(is_under(rel, d) for d in walked) and os.path.lexists(self.local_path(rel)):
                continue
            entry_plan = self.incremental(rel, event.kind, event.is_dir)
            if (entry_plan and entry_plan[0].kind == OpKind.MKDIR and entry_plan[0].path == rel
                    and event.kind != ChangeKind.MODIFIED):
                walked.append(rel)
            removed.extend(op.path for op in entry_plan if op.kind == OpKind.RM_DIR)
            plan.extend(entry_plan)
        return plan
