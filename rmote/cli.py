#!/usr/bin/env python3
"""
rmote  —  Mirror a local directory to a remote host over SFTP
=============================================================

Subcommands:
  init      Create a .rmote config file (and .rmoteignore) in the current directory.
  sync      Initial full sync, then watch the local tree and push every change.
  plan      Print the initial-sync plan without connecting (dry run).

Run 'rmote <subcommand> --help' for more details.
"""
import argparse
import sys
from pathlib import Path

from . import config as _cfg
from .errors import ConfigError

IGNORE_TEMPLATE = """# One blacklist rule per line.
# A name (no slash) matches at any depth; a path (with a slash) is anchored
# at the project root. Wildcards: * ? **
.git
__pycache__
node_modules
.DS_Store
*.swp
.idea
.vscode
"""


def _yq(value: str) -> str:
    """Wrap a string in YAML single quotes, escaping embedded single quotes."""
    return "'" + value.replace("'", "''") + "'"


# ── init ─────────────────────────────────────────────────────────────────────

def cmd_init(args):
    """Create a .rmote profile file in the current directory."""
    target = Path.cwd() / _cfg.PROJECT_FILE

    if target.exists() and not args.force:
        print(f"error: {_cfg.PROJECT_FILE} already exists in {Path.cwd()}", file=sys.stderr)
        print("Use --force to overwrite.", file=sys.stderr)
        sys.exit(1)

    g_defaults = _cfg.load_global_config().get("defaults") or {}

    server = args.server or g_defaults.get("server")
    if not args.server and sys.stdin.isatty():
        hint = f" [{server}]" if server else ""
        val = input(f"Server hostname{hint}: ").strip()
        if val:
            server = val
    if not server:
        print("error: a server hostname is required (--server).", file=sys.stderr)
        sys.exit(1)

    user = args.user or g_defaults.get("user", _cfg.SSH_USER)
    port = args.port or int(g_defaults.get("port", _cfg.SSH_PORT))
    remote_root = args.remote or Path.cwd().name
    local_root = (args.local or ".").replace("\\", "/")

    lines = [
        "# .rmote — rmote project configuration",
        "#",
        "# profiles: list of mirror targets for this project.",
        "# remote_root is relative to defaults.base_remote when it does not start with '/'.",
        "profiles:",
        f"  - name: {args.profile}",
        f"    server: {_yq(server)}",
        f"    port: {port}",
        f"    user: {_yq(user)}",
        f"    local_root: {_yq(local_root)}",
        f"    remote_root: {_yq(remote_root)}",
        f"    debounce: {_cfg.DEBOUNCE_S:g}",
        "    blacklist: []",
    ]
    base_remote = args.base_remote or g_defaults.get("base_remote", "")
    if base_remote:
        lines += [
            "defaults:",
            f"  base_remote: {_yq(base_remote)}",
        ]
    content = "\n".join(lines) + "\n"

    ignore_path = Path.cwd() / _cfg.IGNORE_FILE
    if args.dry_run:
        print(f"[dry-run] Would write {target}:")
        print(content)
        if not ignore_path.exists():
            print(f"[dry-run] Would write {ignore_path}:")
            print(IGNORE_TEMPLATE)
        return

    target.write_text(content, encoding="utf-8")
    print(f"Created {target}")
    if not ignore_path.exists():
        ignore_path.write_text(IGNORE_TEMPLATE, encoding="utf-8")
        print(f"Created {ignore_path}")
    elif args.verbose:
        print(f"{ignore_path} already exists; not modified.")
    if args.verbose:
        print(content)


# ── sync / plan ───────────────────────────────────────────────────────────────

def _overrides(args) -> dict:
    return {
        "server": getattr(args, "host", None),
        "port": getattr(args, "port", None),
        "user": getattr(args, "user", None),
        "ssh_key": getattr(args, "identity", None),
        "passphrase": getattr(args, "passphrase", None),
        "remote_root": getattr(args, "remote_dir", None),
        "local_root": str(Path(args.local).resolve()) if args.local else None,
        "blacklist": args.blacklist or None,
        "debounce": getattr(args, "debounce", None),
        "op_timeout": getattr(args, "op_timeout", None),
        "initial_sync": False if getattr(args, "no_initial_sync", False) else None,
        "skip_unchanged": True if getattr(args, "skip_unchanged", False) else None,
    }


def _load(args) -> _cfg.SyncConfig:
    try:
        return _cfg.load_config(args.profile, overrides=_overrides(args))
    except ConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(2)


def cmd_sync(args):
    """Mirror the local tree to the remote until interrupted."""
    from .core.sync_engine import run_sync

    config = _load(args)
    if not config.host:
        print("error: no remote host configured (--host, RMOTE_HOST or .rmote).", file=sys.stderr)
        sys.exit(2)
    if args.once and not config.initial_sync:
        print("error: --once needs the initial sync (drop --no-initial-sync).", file=sys.stderr)
        sys.exit(2)
    run_sync(config, watch=not args.once, verbose=args.verbose)


def cmd_plan(args):
    """Print the initial-sync plan for the local tree."""
    from .operations.differ import TreeDiffer
    from .operations.plan import RemoteIndex
    from .utils.blacklist import Blacklist
    from .utils.logging import set_verbose

    set_verbose(args.verbose)
    config = _load(args)
    try:
        blacklist = Blacklist.from_config(config)
    except ConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(2)
    plan = TreeDiffer(config, blacklist, RemoteIndex()).full_tree()
    for op in plan:
        print(op)
    print(f"\n{len(plan)} operation(s) → {config.target}")


# ── main ──────────────────────────────────────────────────────────────────────

def _add_common(p):
    p.add_argument("--profile", metavar="NAME", default="default",
                   help="Profile to use (default: default)")
    p.add_argument("--local", metavar="PATH",
                   help="Local root directory (default: project dir or cwd)")
    p.add_argument("-x", "--blacklist", metavar="RULE", action="append", default=[],
                   help="Blacklist a name or path prefix; may be repeated")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Show every decision, not just actions")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rmote",
        description="Mirror a local directory to a remote host over SFTP",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    # ── init ──────────────────────────────────────────────────────────────────
    init_p = subparsers.add_parser(
        "init",
        help="Create a .rmote config file in the current directory",
        description="Create a .rmote YAML config file for this project.",
    )
    init_p.add_argument("--local", metavar="PATH",
                        help="Local root directory (default: .)")
    init_p.add_argument("--remote", metavar="PATH",
                        help="Remote root path (relative to base_remote or absolute)")
    init_p.add_argument("--server", metavar="HOST", help="Remote server hostname or IP")
    init_p.add_argument("--user", metavar="NAME", help="SSH username (default: root)")
    init_p.add_argument("--port", type=int, metavar="N", help="SSH port (default: 22)")
    init_p.add_argument("--base-remote", metavar="PATH",
                        help="Base remote path prepended to relative remote roots")
    init_p.add_argument("--profile", metavar="NAME", default="default",
                        help="Profile name to create (default: default)")
    init_p.add_argument("--force", action="store_true", help="Overwrite existing .rmote")
    init_p.add_argument("-n", "--dry-run", action="store_true",
                        help="Preview without writing files")
    init_p.add_argument("-v", "--verbose", action="store_true", help="Show extra output")

    # ── sync ──────────────────────────────────────────────────────────────────
    sync_p = subparsers.add_parser(
        "sync",
        help="Full sync, then push local changes as they happen",
        description="Mirror the local tree to the remote and keep it mirrored.",
    )
    _add_common(sync_p)
    sync_p.add_argument("--host", metavar="HOST", help="Remote host (env RMOTE_HOST)")
    sync_p.add_argument("--port", type=int, metavar="N", help="SSH port (env RMOTE_PORT)")
    sync_p.add_argument("--user", metavar="NAME", help="SSH username (env RMOTE_USER)")
    sync_p.add_argument("-i", "--identity", metavar="KEY",
                        help="Private key file (env RMOTE_KEY)")
    sync_p.add_argument("--passphrase", metavar="TEXT",
                        help="Passphrase for the private key (env RMOTE_PASSPHRASE)")
    sync_p.add_argument("--remote-dir", metavar="PATH",
                        help="Remote directory to mirror into (env RMOTE_REMOTE_DIR)")
    sync_p.add_argument("--debounce", type=float, metavar="SECONDS",
                        help=f"Quiet period before changes are pushed (default: {_cfg.DEBOUNCE_S:g})")
    sync_p.add_argument("--op-timeout", type=float, metavar="SECONDS",
                        help="Treat a remote operation slower than this as a broken session")
    sync_p.add_argument("--no-initial-sync", action="store_true",
                        help="Skip the full sync at startup")
    sync_p.add_argument("--once", action="store_true",
                        help="Run the initial sync and exit without watching")
    sync_p.add_argument("--skip-unchanged", action="store_true",
                        help="Initial sync: keep remote files whose size, mtime and mode already match")

    # ── plan ──────────────────────────────────────────────────────────────────
    plan_p = subparsers.add_parser(
        "plan",
        help="Print the initial-sync plan without connecting",
        description="List the operations a full sync would send to the remote.",
    )
    _add_common(plan_p)
    return parser


def main(argv=None):
    """CLI entry point for rmote"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "init":
        cmd_init(args)
    elif args.command == "sync":
        cmd_sync(args)
    elif args.command == "plan":
        cmd_plan(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
