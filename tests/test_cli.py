"""
Integration tests for rmote CLI behavior and configuration loading.

Tests:
  - .rmote discovery: searching parent directories upward
  - config loading: profiles, base_remote, environment and CLI overrides
  - rmote init: creates a valid .rmote YAML, refuses overwrite without --force
  - rmote plan: prints the initial-sync plan without connecting
"""
import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path, PurePosixPath


# ── Helpers ───────────────────────────────────────────────────────────────────

REPO_ROOT = Path(__file__).parent.parent


def run_rmote(*args, cwd=None, input_text=None, config_home=None):
    """Run the rmote CLI and return (returncode, stdout, stderr)."""
    env = {k: v for k, v in os.environ.items() if not k.startswith("RMOTE_")}
    env["PYTHONPATH"] = str(REPO_ROOT)
    env["PYTHONIOENCODING"] = "utf-8"
    if config_home is not None:
        env["XDG_CONFIG_HOME"] = str(config_home)
    result = subprocess.run(
        [sys.executable, "-m", "rmote", *args],
        cwd=str(cwd or REPO_ROOT),
        capture_output=True,
        text=True,
        encoding="utf-8",
        input=input_text,
        env=env,
    )
    return result.returncode, result.stdout, result.stderr


# ── Tests: .rmote discovery ───────────────────────────────────────────────────

class TestFindProjectFile(unittest.TestCase):
    """Tests for find_project_file(): upward search through parent directories."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name).resolve()

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_find_in_same_directory(self):
        from rmote.config import find_project_file
        (self.root / ".rmote").write_text("profiles: []\n", encoding="utf-8")
        self.assertEqual(find_project_file(self.root), self.root / ".rmote")

    def test_find_in_parent_directory(self):
        """find_project_file searches upward and finds .rmote in a parent."""
        from rmote.config import find_project_file
        (self.root / ".rmote").write_text("profiles: []\n", encoding="utf-8")
        subdir = self.root / "a" / "b" / "c"
        subdir.mkdir(parents=True)
        self.assertEqual(find_project_file(subdir), self.root / ".rmote")

    def test_finds_nearest_file(self):
        """The closest .rmote wins over one further up."""
        from rmote.config import find_project_file
        (self.root / ".rmote").write_text("profiles: []\n", encoding="utf-8")
        inner = self.root / "inner"
        inner.mkdir()
        (inner / ".rmote").write_text("profiles: []\n", encoding="utf-8")
        self.assertEqual(find_project_file(inner / "."), inner / ".rmote")

    def test_directory_named_like_file_is_ignored(self):
        from rmote.config import find_project_file
        sub = self.root / "sub"
        (sub / ".rmote").mkdir(parents=True)
        (self.root / ".rmote").write_text("profiles: []\n", encoding="utf-8")
        self.assertEqual(find_project_file(sub), self.root / ".rmote")


# ── Tests: config loading ─────────────────────────────────────────────────────

class TestLoadConfig(unittest.TestCase):
    """Tests for get_profile(), build_config() and load_config()."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name).resolve()
        self.config_home = self.root / "xdg"
        self.config_home.mkdir()
        self._saved_xdg = os.environ.get("XDG_CONFIG_HOME")
        os.environ["XDG_CONFIG_HOME"] = str(self.config_home)

    def tearDown(self):
        if self._saved_xdg is None:
            os.environ.pop("XDG_CONFIG_HOME", None)
        else:
            os.environ["XDG_CONFIG_HOME"] = self._saved_xdg
        self.tmpdir.cleanup()

    def _write_project(self, text: str):
        (self.root / ".rmote").write_text(text, encoding="utf-8")

    def test_build_config_defaults(self):
        from rmote.config import build_config, DEBOUNCE_S, SSH_PORT, SSH_USER
        cfg = build_config({}, base_dir=self.root)
        self.assertIsNone(cfg.host)
        self.assertEqual(cfg.port, SSH_PORT)
        self.assertEqual(cfg.user, SSH_USER)
        self.assertEqual(cfg.debounce, DEBOUNCE_S)
        self.assertEqual(cfg.local_root, self.root)
        self.assertEqual(cfg.remote_root, PurePosixPath("."))
        self.assertTrue(cfg.initial_sync)
        self.assertFalse(cfg.skip_unchanged)

    def test_build_config_basic(self):
        from rmote.config import build_config
        cfg = build_config({
            "server": "myserver.example.com",
            "port": 2222,
            "username": "deploy",
            "local_root": "src",
            "remote_root": "/srv/app",
            "blacklist": ".git",
            "debounce": "0.5",
            "initial_sync": "no",
        }, base_dir=self.root)
        self.assertEqual(cfg.host, "myserver.example.com")
        self.assertEqual(cfg.port, 2222)
        self.assertEqual(cfg.user, "deploy")
        self.assertEqual(cfg.local_root, self.root / "src")
        self.assertEqual(cfg.remote_root, PurePosixPath("/srv/app"))
        self.assertEqual(cfg.blacklist, (".git",))
        self.assertEqual(cfg.debounce, 0.5)
        self.assertFalse(cfg.initial_sync)
        self.assertEqual(cfg.target, "deploy@myserver.example.com:2222:/srv/app")

    def test_skip_unchanged_is_opt_in(self):
        from rmote.cli import _overrides, build_parser
        from rmote.config import load_config
        plain = build_parser().parse_args(["sync"])
        cfg = load_config(start=self.root, env={}, overrides=_overrides(plain))
        self.assertFalse(cfg.skip_unchanged)
        flagged = build_parser().parse_args(["sync", "--skip-unchanged"])
        cfg = load_config(start=self.root, env={}, overrides=_overrides(flagged))
        self.assertTrue(cfg.skip_unchanged)

    def test_build_config_with_base_remote(self):
        """base_remote is prepended to a relative remote_root only."""
        from rmote.config import build_config
        cfg = build_config({"remote_root": "myproject", "base_remote": "/home/user/"},
                           base_dir=self.root)
        self.assertEqual(cfg.remote_root, PurePosixPath("/home/user/myproject"))
        cfg = build_config({"remote_root": "/opt/app", "base_remote": "/home/user"},
                           base_dir=self.root)
        self.assertEqual(cfg.remote_root, PurePosixPath("/opt/app"))

    def test_build_config_rejects_bad_values(self):
        from rmote.config import build_config
        from rmote.errors import ConfigError
        for profile in ({"debounce": -1}, {"port": "ssh"}, {"port": 70000},
                        {"op_timeout": 0}):
            with self.subTest(profile=profile):
                with self.assertRaises(ConfigError):
                    build_config(profile, base_dir=self.root)

    def test_config_is_immutable(self):
        import dataclasses
        from rmote.config import build_config
        cfg = build_config({}, base_dir=self.root)
        with self.assertRaises(dataclasses.FrozenInstanceError):
            cfg.debounce = 3

    def test_get_profile_by_name(self):
        from rmote.config import get_profile
        data = {
            "profiles": [
                {"name": "default", "server": "server1.example.com"},
                {"name": "staging", "server": "staging.example.com"},
            ],
            "defaults": {"user": "deploy"},
        }
        profile = get_profile(data, "staging")
        self.assertEqual(profile["server"], "staging.example.com")
        self.assertEqual(profile["user"], "deploy")

    def test_get_profile_falls_back_to_first(self):
        from rmote.config import get_profile
        data = {"profiles": [{"name": "production", "server": "prod.example.com"}]}
        self.assertEqual(get_profile(data, "nonexistent")["server"], "prod.example.com")

    def test_invalid_yaml_raises_config_error(self):
        from rmote.config import load_profile_file
        from rmote.errors import ConfigError
        self._write_project("profiles: [\n")
        with self.assertRaises(ConfigError):
            load_profile_file(self.root / ".rmote")
        self._write_project("- just\n- a list\n")
        with self.assertRaises(ConfigError):
            load_profile_file(self.root / ".rmote")

    def test_load_config_layers(self):
        """Global defaults < .rmote profile < RMOTE_* env < explicit overrides."""
        from rmote.config import load_config
        (self.config_home / "rmote").mkdir()
        (self.config_home / "rmote" / "config.yaml").write_text(
            "defaults:\n  user: globaluser\n  port: 2200\n  debounce: 2\n", encoding="utf-8")
        self._write_project(
            "profiles:\n"
            "  - name: default\n"
            "    server: project.example.com\n"
            "    port: 2201\n"
            "    remote_root: /srv/project\n"
            "    local_root: site\n"
            "    blacklist: [.git]\n")
        sub = self.root / "site" / "deep"
        sub.mkdir(parents=True)

        cfg = load_config(start=sub, env={"RMOTE_PORT": "2202", "RMOTE_USER": "envuser"},
                          overrides={"user": "cliuser", "blacklist": ["build"], "server": None})
        self.assertEqual(cfg.host, "project.example.com")
        self.assertEqual(cfg.port, 2202)
        self.assertEqual(cfg.user, "cliuser")
        self.assertEqual(cfg.debounce, 2.0)
        # relative local_root resolves against the directory holding .rmote
        self.assertEqual(cfg.local_root, self.root / "site")
        self.assertEqual(cfg.remote_root, PurePosixPath("/srv/project"))
        self.assertEqual(cfg.blacklist, (".git", "build"))

    def test_load_config_without_project_file_uses_env(self):
        from rmote.config import load_config
        cfg = load_config(start=self.root, env={"RMOTE_HOST": "env.example.com",
                                                "RMOTE_REMOTE_DIR": "/tmp/mirror"})
        self.assertEqual(cfg.host, "env.example.com")
        self.assertEqual(cfg.remote_root, PurePosixPath("/tmp/mirror"))


# ── Tests: rmote init CLI ─────────────────────────────────────────────────────

class TestInitCommand(unittest.TestCase):
    """Tests for the `rmote init` subcommand."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name).resolve()
        self.project = self.root / "myproject"
        self.project.mkdir()
        self.config_home = self.root / "xdg"

    def tearDown(self):
        self.tmpdir.cleanup()

    def _init(self, *args, input_text=None):
        return run_rmote("init", *args, cwd=self.project, input_text=input_text,
                         config_home=self.config_home)

    def test_init_creates_files(self):
        rc, stdout, stderr = self._init("--server", "myserver.example.com")
        self.assertEqual(rc, 0, f"init failed:\n{stderr}")
        self.assertTrue((self.project / ".rmote").exists())
        self.assertTrue((self.project / ".rmoteignore").exists())
        self.assertIn("Created", stdout)

    def test_init_creates_valid_yaml(self):
        """The generated .rmote is valid YAML and loads back as the same profile."""
        from rmote.config import get_profile, load_profile_file
        rc, _, stderr = self._init("--server", "host's.example.com", "--user", "deploy",
                                   "--base-remote", "/home/deploy")
        self.assertEqual(rc, 0, stderr)
        data = load_profile_file(self.project / ".rmote")
        profile = get_profile(data, "default")
        self.assertEqual(profile["server"], "host's.example.com")
        self.assertEqual(profile["user"], "deploy")
        self.assertEqual(profile["remote_root"], "myproject")
        self.assertEqual(data["defaults"]["base_remote"], "/home/deploy")

    def test_init_refuses_overwrite(self):
        (self.project / ".rmote").write_text("profiles: []\n", encoding="utf-8")
        rc, _, stderr = self._init("--server", "myserver.example.com")
        self.assertNotEqual(rc, 0)
        self.assertIn("already exists", stderr)
        self.assertEqual((self.project / ".rmote").read_text(encoding="utf-8"), "profiles: []\n")

    def test_init_force_overwrites(self):
        (self.project / ".rmote").write_text("profiles: []\n", encoding="utf-8")
        rc, _, stderr = self._init("--server", "myserver.example.com", "--force")
        self.assertEqual(rc, 0, stderr)
        self.assertIn("myserver.example.com",
                      (self.project / ".rmote").read_text(encoding="utf-8"))

    def test_init_keeps_existing_ignore_file(self):
        (self.project / ".rmoteignore").write_text("dist\n", encoding="utf-8")
        rc, _, stderr = self._init("--server", "myserver.example.com")
        self.assertEqual(rc, 0, stderr)
        self.assertEqual((self.project / ".rmoteignore").read_text(encoding="utf-8"), "dist\n")

    def test_init_dry_run_does_not_write(self):
        rc, stdout, _ = self._init("--server", "myserver.example.com", "--dry-run")
        self.assertEqual(rc, 0)
        self.assertIn("[dry-run]", stdout)
        self.assertFalse((self.project / ".rmote").exists())
        self.assertFalse((self.project / ".rmoteignore").exists())

    def test_init_requires_server(self):
        rc, _, stderr = self._init(input_text="")
        self.assertNotEqual(rc, 0)
        self.assertIn("server", stderr)


# ── Tests: rmote plan CLI ─────────────────────────────────────────────────────

class TestPlanCommand(unittest.TestCase):
    """Tests for the `rmote plan` subcommand (no network involved)."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name).resolve()
        self.project = self.root / "proj"
        (self.project / "a").mkdir(parents=True)
        (self.project / ".git").mkdir()
        (self.project / "a" / "b.txt").write_text("hello", encoding="utf-8")
        (self.project / ".git" / "config").write_text("[core]\n", encoding="utf-8")
        os.chmod(self.project / "a", 0o755)
        os.chmod(self.project / "a" / "b.txt", 0o644)
        (self.project / ".rmote").write_text(
            "profiles:\n  - name: default\n    server: example.com\n"
            "    remote_root: /srv/proj\n    blacklist: [.git, .rmote]\n",
            encoding="utf-8")
        self.config_home = self.root / "xdg"

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_plan_lists_operations_parents_first(self):
        rc, stdout, stderr = run_rmote("plan", cwd=self.project, config_home=self.config_home)
        self.assertEqual(rc, 0, stderr)
        lines = [line for line in stdout.splitlines() if line.strip()]
        self.assertEqual(lines[:2], ["MkDir(a, 755)", "PutFile(a/b.txt, 644)"])
        self.assertNotIn(".git", stdout)
        self.assertIn("2 operation(s)", stdout)

    def test_plan_extra_blacklist_flag(self):
        rc, stdout, stderr = run_rmote("plan", "-x", "a", cwd=self.project,
                                       config_home=self.config_home)
        self.assertEqual(rc, 0, stderr)
        self.assertNotIn("MkDir(a", stdout)
        self.assertIn("0 operation(s)", stdout)

    def test_plan_rejects_malformed_rule(self):
        rc, _, stderr = run_rmote("plan", "-x", "../outside", cwd=self.project,
                                  config_home=self.config_home)
        self.assertEqual(rc, 2)
        self.assertIn("invalid blacklist rule", stderr)

    def test_no_subcommand_prints_help(self):
        rc, stdout, _ = run_rmote(cwd=self.project, config_home=self.config_home)
        self.assertEqual(rc, 1)
        self.assertIn("usage", stdout.lower())


if __name__ == "__main__":
    unittest.main()
