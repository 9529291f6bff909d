import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from nbpkg.config import DEFAULT_TIMEOUT_S, Config, apply_env_overrides, load_config, redact_token, save_config


class TestConfigFile(unittest.TestCase):
    def test_save_then_load(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "nested" / "config.json"
            save_config(Config(registry_url="https://r.example", token="tok"), path)

            self.assertEqual(load_config(path), Config(registry_url="https://r.example", token="tok"))

    def test_malformed_file_reads_as_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.json"
            path.write_text("{not json", encoding="utf-8")

            with self.assertLogs("nbpkg.config", level="WARNING"):
                self.assertEqual(load_config(path), Config())

    def test_unknown_keys_and_bad_timeout_are_dropped(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.json"
            path.write_text('{"token": "t", "timeout_s": "soon", "theme": "dark"}', encoding="utf-8")

            cfg = load_config(path)

        self.assertEqual(cfg.token, "t")
        self.assertEqual(cfg.timeout_s, DEFAULT_TIMEOUT_S)


class TestEnvOverrides(unittest.TestCase):
    def test_env_wins_over_file_values(self) -> None:
        base = Config(registry_url="https://file.example", token="file", timeout_s=10.0)
        env = {"NBPKG_REGISTRY_URL": "https://env.example", "NBPKG_TOKEN": "", "NBPKG_TIMEOUT_S": "5"}
        with patch.dict(os.environ, env):
            cfg = apply_env_overrides(base)

        self.assertEqual(cfg, Config(registry_url="https://env.example", token="file", timeout_s=5.0))

    def test_invalid_timeout_keeps_file_value(self) -> None:
        with patch.dict(os.environ, {"NBPKG_TIMEOUT_S": "bogus"}):
            with self.assertLogs("nbpkg.config", level="WARNING"):
                cfg = apply_env_overrides(Config(timeout_s=10.0))

        self.assertEqual(cfg.timeout_s, 10.0)

    def test_redact_token(self) -> None:
        self.assertIsNone(redact_token(None))
        self.assertEqual(redact_token("short"), "sh...rt")
        self.assertEqual(redact_token("tok_1234567890abcdef"), "tok_12...cdef")


if __name__ == "__main__":
    unittest.main()
