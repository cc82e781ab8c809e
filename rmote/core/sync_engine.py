"""
Sync orchestrator: initial reconciliation, then debounced incremental pushes
"""
import signal
import sys
import threading
import traceback
from collections import Counter
from enum import Enum
from typing import Callable, Optional

from ..config import SyncConfig
from ..errors import ConfigError, ConnectionFailed, LocalReadFailed, RemoteOperationFailed, SessionBroken
from ..operations.differ import TreeDiffer
from ..operations.plan import Operation, OpKind, RemoteIndex, SyncPlan, format_plan
from ..utils.blacklist import Blacklist
from ..utils.logging import error, log, set_verbose, vlog, warn
from .gateway import SFTPGateway
from .watcher import ChangeBatch, EventDebouncer, LocalWatcher, WatchdogBridge


class State(str, Enum):
    CONNECTING = "connecting"
    INITIAL_SYNC = "initial_sync"
    WATCHING = "watching"
    APPLYING = "applying"
    SHUTTING_DOWN = "shutting_down"


def _default_watcher(root, handler) -> LocalWatcher:
    return LocalWatcher(root, handler)


class SyncOrchestrator:
    """
    Connecting → InitialSync → Watching ⇄ Applying → ShuttingDown

    Remote operations only ever run on the thread that calls run(), one at a
    time, so the session needs no lock. Cancellation is checked between
    batches, never in the middle of an operation.
    """

    def __init__(self, config: SyncConfig, gateway=None, blacklist: Optional[Blacklist] = None,
                 debouncer: Optional[EventDebouncer] = None,
                 watcher_factory: Callable = _default_watcher):
        self.config = config
        self.blacklist = blacklist if blacklist is not None else Blacklist.from_config(config)
        self.index = RemoteIndex()
        self.differ = TreeDiffer(config, self.blacklist, self.index)
        self.gateway = gateway if gateway is not None else SFTPGateway(config)
        self.debouncer = debouncer if debouncer is not None else EventDebouncer(config.debounce)
        self.stop_event = threading.Event()
        self.state = State.CONNECTING
        self.stats: Counter = Counter()
        self._watcher_factory = watcher_factory

    # ── lifecycle ──────────────────────────────────────────────────────────

    def _enter(self, state: State):
        if state != self.state:
            vlog(f"[state] {self.state.value} → {state.value}")
        self.state = state

    def request_stop(self):
        self.stop_event.set()

    def run(self, watch: bool = True):
        """Connect, optionally reconcile everything, then push changes until stopped."""
        self._enter(State.CONNECTING)
        self.gateway.connect()
        watcher = None
        try:
            if watch:
                # watch first so edits made during the initial sync are not lost
                watcher = self._watcher_factory(self.config.local_root,
                                                WatchdogBridge(self.debouncer, self.blacklist))
                watcher.start()
            if self.config.initial_sync and not self.stop_event.is_set():
                self.initial_sync()
            if watch:
                self.watch()
        finally:
            self._enter(State.SHUTTING_DOWN)
            if watcher is not None:
                watcher.stop()
            self.gateway.close()

    def initial_sync(self):
        self._enter(State.INITIAL_SYNC)
        log(f"Starting initial sync of {self.config.local_root} …")
        plan = self.differ.full_tree()
        log(f"[plan] {len(plan)} operation(s)")
        failed = self.apply_plan(plan)
        log(f"Initial sync complete ({len(plan) - failed} ok, {failed} failed).")

    def watch(self):
        self._enter(State.WATCHING)
        log(f"[watch] watching {self.config.local_root} (debounce {self.config.debounce:g}s)")
        while not self.stop_event.is_set():
            batch = self.debouncer.next_batch(self.stop_event)
            if batch is None:
                break
            if len(batch):
                self.apply_batch(batch)
            self._enter(State.WATCHING)

    # ── applying ───────────────────────────────────────────────────────────

    def apply_batch(self, batch: ChangeBatch) -> int:
        """Plan and apply one batch; returns the number of failed operations."""
        self._enter(State.APPLYING)
        plan = self.differ.plan_batch(batch)
        vlog(f"[batch] {len(batch)} change(s) → {format_plan(plan)}")
        if not plan:
            return 0
        failed = self.apply_plan(plan)
        log(f"[batch] {len(batch)} change(s), {len(plan)} operation(s), {failed} failed")
        return failed

    def apply_plan(self, plan: SyncPlan) -> int:
        """Apply *plan* in order, best effort. Returns the number of failed operations."""
        failed = 0
        for op in plan:
            if not self._apply_guarded(op):
                failed += 1
        return failed

    def _apply_guarded(self, op: Operation) -> bool:
        try:
            return self._apply(op)
        except SessionBroken as exc:
            warn(f"[SSH] session broken during {op}: {exc}")
            self.stats["session_broken"] += 1
            self.gateway.reconnect()
            try:
                return self._apply(op)
            except SessionBroken as again:
                raise ConnectionFailed(f"session broke again after reconnect: {again}") from again

    def _apply(self, op: Operation) -> bool:
        try:
            self._execute(op)
        except RemoteOperationFailed as exc:
            warn(f"  [FAIL] {op}: {exc.cause}")
            self.stats["failed"] += 1
            return False
        except LocalReadFailed as exc:
            vlog(f"  [GONE] {exc}")
            results = [self._apply(removal) for removal in self.differ.removal_for(op.path)]
            return all(results)
        self.index.record(op)
        self.stats[op.kind.value] += 1
        return True

    def _execute(self, op: Operation):
        gw = self.gateway
        if op.kind == OpKind.MKDIR:
            gw.mkdir(op.path, op.mode)
        elif op.kind == OpKind.PUT:
            local = self.differ.local_path(op.path)
            try:
                fh = open(local, "rb")
            except OSError as exc:
                raise LocalReadFailed(op.path, exc) from exc
            with fh:
                gw.put(op.path, op.mode, fh, size=op.size, mtime=op.mtime,
                       only_if_changed=op.only_if_changed)
        elif op.kind == OpKind.CHMOD:
            gw.chmod(op.path, op.mode)
        elif op.kind == OpKind.RM_FILE:
            gw.rm_file(op.path)
        elif op.kind == OpKind.RM_DIR:
            gw.rm_dir_recursive(op.path)
        else:
            raise ValueError(f"unknown operation {op.kind!r}")


# ── entry point ─────────────────────────────────────────────────────────────

def _install_signal_handlers(orch: SyncOrchestrator):
    if threading.current_thread() is not threading.main_thread():
        return

    def _handler(signum, frame):
        warn("Stop requested, finishing the current batch (repeat to abort).")
        orch.request_stop()
        # a second Ctrl-C interrupts immediately
        signal.signal(signal.SIGINT, signal.default_int_handler)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def run_sync(config: SyncConfig, watch: bool = True, verbose: bool = False):
    set_verbose(verbose)

    print(f"\n{'=' * 64}")
    print(f"  Mirror  {config.local_root}")
    print(f"   →      {config.target}")
    print(f"{'=' * 64}\n")

    try:
        orch = SyncOrchestrator(config)
    except ConfigError as exc:
        error(str(exc))
        sys.exit(2)
    log(f"[blacklist] {len(orch.blacklist)} rule(s)")
    _install_signal_handlers(orch)

    try:
        orch.run(watch=watch)
    except KeyboardInterrupt:
        print()
        warn("Interrupted.")
    except ConnectionFailed as exc:
        error(f"Sync aborted: {exc}")
        if verbose:
            traceback.print_exc()
        sys.exit(1)

    s = orch.stats
    print()
    print(f"{'─' * 64}")
    print(" SUMMARY")
    print(f"  Uploaded   : {s[OpKind.PUT.value]}")
    print(f"  Dirs       : {s[OpKind.MKDIR.value]}")
    print(f"  Chmod      : {s[OpKind.CHMOD.value]}")
    print(f"  Removed    : {s[OpKind.RM_FILE.value] + s[OpKind.RM_DIR.value]}")
    print(f"  Failed     : {s['failed']}")
    print(f"{'─' * 64}")
