"""
SFTP session gateway: the one channel every remote operation goes through
"""
import errno
import functools
import os
import posixpath
import socket
import stat
import uuid
from typing import BinaryIO, Callable, Optional, Set, Tuple

import paramiko

from ..config import SyncConfig
from ..errors import (ConnectionFailed, LocalReadFailed, RemoteOperationFailed, RmoteError,
                      SessionBroken)
from ..utils.logging import log, vlog

# Mode for ancestors created implicitly
DEFAULT_DIR_MODE = 0o755
KEEPALIVE_S = 30

Connector = Callable[[SyncConfig], Tuple[paramiko.SSHClient, paramiko.SFTPClient]]


def open_session(cfg: SyncConfig) -> Tuple[paramiko.SSHClient, paramiko.SFTPClient]:
    """Connect, authenticate and open the SFTP subsystem."""
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    kw: dict = dict(hostname=cfg.host, port=cfg.port, username=cfg.user,
                    timeout=20, banner_timeout=30, auth_timeout=30)
    if cfg.ssh_key:
        key = os.path.expanduser(cfg.ssh_key)
        if os.path.isfile(key):
            kw["key_filename"] = key
        else:
            vlog(f"[SSH] key {key} not found; trying agent / default keys")
    if cfg.passphrase:
        kw["passphrase"] = cfg.passphrase
    if cfg.ssh_password:
        kw["password"] = cfg.ssh_password

    try:
        client.connect(**kw)
        # Keep-alive: send a NOP every 30s
        client.get_transport().set_keepalive(KEEPALIVE_S)
        return client, client.open_sftp()
    except Exception:
        client.close()
        raise


def _categorized(action: str):
    """
    Decorator: map paramiko / socket failures of a gateway call onto
    SessionBroken (transport gone) or RemoteOperationFailed (command refused).
    """

    def deco(fn):
        @functools.wraps(fn)
        def wrapper(self, rel, *args, **kwargs):
            if self._sftp is None:
                raise SessionBroken("no open session", action, rel)
            try:
                return fn(self, rel, *args, **kwargs)
            except RmoteError:
                raise
            except (paramiko.SSHException, EOFError, socket.timeout) as exc:
                raise SessionBroken(f"{action} {rel!r}: {exc}", action, rel) from exc
            except OSError as exc:
                if not self.is_alive():
                    raise SessionBroken(f"{action} {rel!r}: {exc}", action, rel) from exc
                raise RemoteOperationFailed(action, rel, exc) from exc

        return wrapper

    return deco


def _is_dir(attrs) -> bool:
    return attrs is not None and stat.S_ISDIR(attrs.st_mode)


class _LocalSource:
    """Read side of an upload: local read errors raise LocalReadFailed, not a remote failure."""

    def __init__(self, rel: str, fh: BinaryIO):
        self.rel = rel
        self.fh = fh

    def read(self, size: int = -1) -> bytes:
        try:
            return self.fh.read(size)
        except OSError as exc:
            raise LocalReadFailed(self.rel, exc) from exc


class SFTPGateway:
    """
    Wraps one paramiko SSHClient + SFTPClient pair.

    Every operation takes a path relative to the remote root, is idempotent
    and must be called from one thread at a time. Failures surface as
    SessionBroken or RemoteOperationFailed; nothing is retried here.
    """

    def __init__(self, config: SyncConfig, connector: Connector = open_session):
        self.config = config
        self._connector = connector
        self._ssh: Optional[paramiko.SSHClient] = None
        self._sftp: Optional[paramiko.SFTPClient] = None
        self._known_dirs: Set[str] = set()

    # ── connection ─────────────────────────────────────────────────────────

    def connect(self):
        log(f"[SSH] connecting to {self.config.user}@{self.config.host}:{self.config.port} …")
        try:
            self._ssh, self._sftp = self._connector(self.config)
        except (paramiko.SSHException, OSError, EOFError) as exc:
            self._close_quietly()
            raise ConnectionFailed(
                f"cannot connect to {self.config.host}:{self.config.port}: {exc}") from exc
        if self.config.op_timeout:
            self._sftp.get_channel().settimeout(self.config.op_timeout)
        self._known_dirs.clear()
        log("[SSH] connected ✓")

        try:
            self._ensure_dir(self._remote(""))
        except (paramiko.SSHException, OSError, EOFError) as exc:
            self._close_quietly()
            raise ConnectionFailed(
                f"cannot create remote root {self.config.remote_root}: {exc}") from exc

    def _close_quietly(self):
        for handle in (self._sftp, self._ssh):
            if handle is None:
                continue
            try:
                handle.close()
            except Exception:
                pass
        self._ssh = None
        self._sftp = None

    def close(self):
        if self._ssh is None and self._sftp is None:
            return
        self._close_quietly()
        log("[SSH] disconnected.")

    def reconnect(self):
        log("[SSH] reconnecting …")
        self._close_quietly()
        self.connect()

    def is_alive(self) -> bool:
        try:
            transport = self._ssh.get_transport() if self._ssh else None
            return transport is not None and transport.is_active()
        except Exception:
            return False

    # ── helpers ────────────────────────────────────────────────────────────

    def _remote(self, rel: str) -> str:
        root = str(self.config.remote_root)
        if not rel or rel == ".":
            return root
        return posixpath.join(root, rel)

    def _stat(self, path: str):
        try:
            return self._sftp.stat(path)
        except FileNotFoundError:
            return None

    def _ensure_dir(self, path: str, mode: int = DEFAULT_DIR_MODE):
        """Create *path* and its missing ancestors; existing directories are left alone."""
        if path in self._known_dirs:
            return
        parent = posixpath.dirname(path)
        if parent and parent not in (path, "/", "."):
            self._ensure_dir(parent)
        attrs = self._stat(path)
        if attrs is None:
            try:
                self._sftp.mkdir(path, mode)
            except IOError:
                # created concurrently?
                if not _is_dir(self._stat(path)):
                    raise
        elif not _is_dir(attrs):
            raise NotADirectoryError(errno.ENOTDIR, "not a directory", path)
        self._known_dirs.add(path)

    def _ensure_parents(self, path: str):
        parent = posixpath.dirname(path)
        if parent and parent not in ("/", "."):
            self._ensure_dir(parent)

    def _forget_dirs(self, path: str):
        self._known_dirs = {d for d in self._known_dirs
                            if d != path and not d.startswith(path + "/")}

    def _remove_tree(self, path: str):
        for entry in self._sftp.listdir_attr(path):
            child = posixpath.join(path, entry.filename)
            if stat.S_ISDIR(entry.st_mode):
                self._remove_tree(child)
                continue
            try:
                self._sftp.remove(child)
            except FileNotFoundError:
                pass
        self._sftp.rmdir(path)
        self._forget_dirs(path)

    def _discard(self, path: str):
        try:
            self._sftp.remove(path)
        except Exception:
            pass

    def _rename_over(self, src: str, dst: str):
        try:
            self._sftp.posix_rename(src, dst)
        except IOError:
            if not self.is_alive():
                raise
            # server without posix-rename: plain rename refuses to overwrite
            self._discard(dst)
            self._sftp.rename(src, dst)

    # ── operations ─────────────────────────────────────────────────────────

    @_categorized("mkdir")
    def mkdir(self, rel: str, mode: int) -> bool:
        """Create a directory (and ancestors); fix its mode if it already exists."""
        path = self._remote(rel)
        self._ensure_parents(path)
        attrs = self._stat(path)
        if _is_dir(attrs):
            self._known_dirs.add(path)
            if stat.S_IMODE(attrs.st_mode) == mode:
                vlog(f"  [MKDIR-SKIP] {rel}")
                return False
            self._sftp.chmod(path, mode)
            log(f"  [CHMOD] {rel} {mode:o}")
            return True
        if attrs is not None:
            self._sftp.remove(path)
        self._sftp.mkdir(path, mode)
        # the server's umask may have masked bits off
        self._sftp.chmod(path, mode)
        self._known_dirs.add(path)
        log(f"  [MKDIR] {rel} {mode:o}")
        return True

    @_categorized("put")
    def put(self, rel: str, mode: int, content: BinaryIO, *, size: Optional[int] = None,
            mtime: Optional[float] = None, only_if_changed: bool = False) -> bool:
        """
        Upload *content* to *rel* via a temporary name and an atomic rename,
        then set *mode* (and *mtime* when given). With *only_if_changed* the
        upload is skipped when the remote file already has the same size,
        whole-second mtime and mode.
        """
        path = self._remote(rel)
        self._ensure_parents(path)
        attrs = self._stat(path)
        if _is_dir(attrs):
            self._remove_tree(path)
        elif attrs is not None and only_if_changed and size is not None and mtime is not None:
            if (attrs.st_size == size and int(attrs.st_mtime) == int(mtime)
                    and stat.S_IMODE(attrs.st_mode) == mode):
                vlog(f"  [PUT-SKIP] {rel} unchanged")
                return False

        tmp = posixpath.join(posixpath.dirname(path),
                             f".{posixpath.basename(path)}.rmote-{uuid.uuid4().hex[:8]}.tmp")
        try:
            self._sftp.putfo(_LocalSource(rel, content), tmp, confirm=True)
            self._sftp.chmod(tmp, mode)
            if mtime is not None:
                self._sftp.utime(tmp, (mtime, mtime))
            self._rename_over(tmp, path)
        except Exception:
            self._discard(tmp)
            raise
        log(f"  [PUT] {rel} {mode:o}")
        return True

    @_categorized("chmod")
    def chmod(self, rel: str, mode: int) -> bool:
        self._sftp.chmod(self._remote(rel), mode)
        log(f"  [CHMOD] {rel} {mode:o}")
        return True

    @_categorized("rm_file")
    def rm_file(self, rel: str) -> bool:
        """Remove a file; an absent file counts as success."""
        try:
            self._sftp.remove(self._remote(rel))
        except FileNotFoundError:
            vlog(f"  [RM-SKIP] {rel} already absent")
            return False
        log(f"  [RM] {rel}")
        return True

    @_categorized("rm_dir_recursive")
    def rm_dir_recursive(self, rel: str) -> bool:
        """Remove a directory tree bottom-up; an absent path counts as success."""
        if not rel or rel == ".":
            raise RemoteOperationFailed("rm_dir_recursive", rel,
                                        ValueError("refusing to remove the remote root"))
        path = self._remote(rel)
        try:
            attrs = self._sftp.lstat(path)
        except FileNotFoundError:
            vlog(f"  [RMDIR-SKIP] {rel} already absent")
            return False
        if stat.S_ISDIR(attrs.st_mode):
            self._remove_tree(path)
        else:
            self._sftp.remove(path)
        log(f"  [RMDIR] {rel}")
        return True
