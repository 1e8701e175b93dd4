import pathlib
import sys
import tempfile
import unittest
from unittest import mock

ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from session_watchdog.config import WatchdogConfig  # noqa: E402
from session_watchdog.errors import ConfigurationError  # noqa: E402


class WatchdogConfigTests(unittest.TestCase):
    def _load(self, td, environ=None, config_text=None, env_text=None):
        root = pathlib.Path(td)
        config_file = None
        if config_text is not None:
            config_file = root / "watchdog.yaml"
            config_file.write_text(config_text, encoding="utf-8")
        env_file = root / "watchdog.env"
        if env_text is not None:
            env_file.write_text(env_text, encoding="utf-8")
        return WatchdogConfig.load(config_file=config_file, env_file=env_file, environ=environ or {})

    def test_defaults(self):
        with tempfile.TemporaryDirectory() as td:
            cfg = self._load(td, environ={"SESSION_WATCHDOG_HOST_ID": "node-1"})
        self.assertEqual(cfg.session_id, "o")
        self.assertEqual(cfg.backend, "tmux")
        self.assertEqual(cfg.max_restarts, 3)
        self.assertEqual(cfg.window_seconds, 600)
        self.assertEqual(cfg.match_scope, "descendant")
        self.assertEqual(cfg.worker_command, ["/usr/local/bin/optimai-cli", "node", "start"])
        self.assertEqual(cfg.worker_signature, "optimai-cli node start")
        self.assertEqual(cfg.ledger_file, pathlib.Path("/var/lib/session-watchdog/restarts.log"))
        self.assertEqual(cfg.worker_log_file, pathlib.Path("/var/lib/session-watchdog/worker.log"))
        self.assertEqual(cfg.host_id, "node-1")

    def test_host_id_defaults_to_hostname(self):
        with tempfile.TemporaryDirectory() as td:
            cfg = self._load(td)
        self.assertTrue(cfg.host_id)

    def test_layering_precedence(self):
        config_text = "session_id: from-yaml\nmax_restarts: 5\nwindow_seconds: 120\nworker_args: [run, --fast]\n"
        env_text = "# comment\nexport SESSION_WATCHDOG_MAX_RESTARTS=7\nSESSION_WATCHDOG_BACKEND='screen'\n"
        with tempfile.TemporaryDirectory() as td:
            cfg = self._load(
                td,
                environ={"SESSION_WATCHDOG_BACKEND": "tmux"},
                config_text=config_text,
                env_text=env_text,
            )
        self.assertEqual(cfg.session_id, "from-yaml")
        self.assertEqual(cfg.window_seconds, 120)
        self.assertEqual(cfg.max_restarts, 7)
        self.assertEqual(cfg.backend, "tmux")
        self.assertEqual(cfg.worker_args, ("run", "--fast"))

    def test_json_config_is_accepted(self):
        with tempfile.TemporaryDirectory() as td:
            cfg = self._load(td, config_text='{"state_dir": "%s/state", "window_seconds": 60}' % td)
            self.assertEqual(cfg.ledger_file, pathlib.Path(td) / "state" / "restarts.log")
            self.assertEqual(cfg.worker_log_file, pathlib.Path(td) / "state" / "worker.log")
        self.assertEqual(cfg.window_seconds, 60)

    def test_worker_args_from_env_are_split(self):
        with tempfile.TemporaryDirectory() as td:
            cfg = self._load(td, environ={"SESSION_WATCHDOG_WORKER_ARGS": "node start --name 'my node'"})
        self.assertEqual(cfg.worker_args, ("node", "start", "--name", "my node"))

    def test_invalid_values_raise(self):
        cases = [
            {"SESSION_WATCHDOG_MAX_RESTARTS": "three"},
            {"SESSION_WATCHDOG_MAX_RESTARTS": "0"},
            {"SESSION_WATCHDOG_WINDOW_SECONDS": "-5"},
            {"SESSION_WATCHDOG_BACKEND": "zellij"},
            {"SESSION_WATCHDOG_MATCH_SCOPE": "global"},
            {"SESSION_WATCHDOG_MATCH_REGEX": "(unclosed"},
            {"SESSION_WATCHDOG_SESSION_ID": "a:b"},
            {"SESSION_WATCHDOG_KILL_SETTLE_SEC": "-1"},
        ]
        with tempfile.TemporaryDirectory() as td:
            for environ in cases:
                with self.subTest(environ=environ):
                    with self.assertRaises(ConfigurationError):
                        self._load(td, environ=environ)

    def test_unknown_config_key_raises(self):
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ConfigurationError):
                self._load(td, config_text="max_restart: 3\n")

    def test_non_mapping_config_raises(self):
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ConfigurationError):
                self._load(td, config_text="- a\n- b\n")

    def test_missing_config_file_raises(self):
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ConfigurationError):
                WatchdogConfig.load(config_file=pathlib.Path(td) / "nope.yaml", environ={})

    def test_undecodable_env_file_raises_configuration_error(self):
        with tempfile.TemporaryDirectory() as td:
            env_file = pathlib.Path(td) / "watchdog.env"
            env_file.write_bytes(b"\xff\xfeSESSION_WATCHDOG_SESSION_ID=o\n")
            with self.assertRaises(ConfigurationError) as ctx:
                WatchdogConfig.load(env_file=env_file, environ={})
        self.assertIn("Cannot read env file", str(ctx.exception))

    def test_unreadable_env_file_raises_configuration_error(self):
        with tempfile.TemporaryDirectory() as td:
            env_file = pathlib.Path(td) / "watchdog.env"
            env_file.write_text("SESSION_WATCHDOG_SESSION_ID=o\n", encoding="utf-8")
            with mock.patch.object(pathlib.Path, "read_text", side_effect=PermissionError("denied")):
                with self.assertRaises(ConfigurationError):
                    WatchdogConfig.load(env_file=env_file, environ={})

    def test_undecodable_config_file_raises_configuration_error(self):
        with tempfile.TemporaryDirectory() as td:
            config_file = pathlib.Path(td) / "watchdog.yaml"
            config_file.write_bytes(b"\xff\xfe\x00")
            with self.assertRaises(ConfigurationError):
                WatchdogConfig.load(config_file=config_file, env_file=pathlib.Path(td) / "none.env", environ={})


if __name__ == "__main__":
    unittest.main()
