import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from fakes import FakeRepo, release

from nbpkg.cli import _merge_cfg, build_parser, main
from nbpkg.client import NbpkgError, NbpkgHTTPError
from nbpkg.config import Config, load_config


def _run(argv: list[str]) -> tuple[int, str, str]:
    out = io.StringIO()
    err = io.StringIO()
    with patch("sys.stdout", new=out), patch("sys.stderr", new=err):
        rc = main(argv)
    return rc, out.getvalue(), err.getvalue()


class TestSync(unittest.TestCase):
    def setUp(self) -> None:
        self.repo = FakeRepo({"Alpha": [release("Alpha", "1.0.0")]})
        patches = [
            patch("nbpkg.cli.load_config", return_value=Config(registry_url="https://registry.example.invalid")),
            patch("nbpkg.cli.RegistryClient"),
            patch("nbpkg.cli.ApiReleaseRepository", return_value=self.repo),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)

    def test_sync_creates_environment_then_is_quiet(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cell = Path(td) / "cell.py"
            cell.write_text("import Alpha\nimport json\nimport not_registered\n", encoding="utf-8")
            env_dir = Path(td) / "env"

            rc, out, _ = _run(["sync", str(cell), "--env-dir", str(env_dir), "--json"])
            self.assertEqual(rc, 0)
            first = json.loads(out)
            self.assertTrue(first["managed"])
            self.assertEqual(first["dependencies"], ["Alpha", "json"])
            self.assertEqual(first["tier_used"], "preserve-all")
            self.assertTrue(first["restart_required"])
            self.assertTrue((env_dir / "nbpkg.json").is_file())
            self.assertTrue((env_dir / "packages" / "Alpha" / "__init__.py").is_file())

            rc, out, _ = _run(["sync", str(cell), "--env-dir", str(env_dir), "--json"])
            self.assertEqual(rc, 0)
            second = json.loads(out)
            self.assertFalse(second["restart_recommended"])
            self.assertFalse(second["restart_required"])

    def test_sync_reports_unmanaged_document(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cell = Path(td) / "cell.py"
            cell.write_text("import nbpkg\nnbpkg.activate('.')\n", encoding="utf-8")

            rc, out, _ = _run(["sync", str(cell), "--env-dir", str(Path(td) / "env")])

        self.assertEqual(rc, 0)
        self.assertIn("Package management is off", out)
        self.assertIn("preserve-all", out)


class TestVersionsAndCompletions(unittest.TestCase):
    def test_versions_and_complete(self) -> None:
        repo = FakeRepo({"Alpha": [release("Alpha", "1.0.0"), release("Alpha", "1.1.0")], "Altair": []})
        with (
            patch("nbpkg.cli.load_config", return_value=Config()),
            patch("nbpkg.cli.RegistryClient"),
            patch("nbpkg.cli.ApiReleaseRepository", return_value=repo),
        ):
            rc, out, _ = _run(["versions", "Alpha"])
            self.assertEqual(rc, 0)
            self.assertEqual(out.split(), ["1.0.0", "1.1.0"])

            rc, _, err = _run(["versions", "Nope"])
            self.assertEqual(rc, 1)
            self.assertIn("package not found", err)

            rc, out, _ = _run(["complete", "Al"])
            self.assertEqual(rc, 0)
            self.assertEqual(out.split(), ["Alpha", "Altair"])


class TestErrors(unittest.TestCase):
    def test_errors_are_reported_with_exit_code(self) -> None:
        for exc, expected in (
            (NbpkgHTTPError(401, ""), "HTTP 401 Unauthorized"),
            (NbpkgError("registry exploded"), "registry exploded"),
        ):
            with self.subTest(expected=expected), patch("nbpkg.cli.cmd_versions", side_effect=exc):
                rc, _, err = _run(["versions", "Alpha"])
                self.assertEqual(rc, 1)
                self.assertIn(expected, err)


class TestConfig(unittest.TestCase):
    def test_config_set_and_show_redacts_token(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.json"
            with patch.dict(os.environ, {"NBPKG_CONFIG_PATH": str(path)}):
                rc, _, _ = _run(["config", "set", "--registry-url", "https://r.example", "--token", "tok_1234567890abcdef"])
                self.assertEqual(rc, 0)
                self.assertEqual(load_config().registry_url, "https://r.example")

                rc, out, _ = _run(["config", "show"])
                self.assertEqual(rc, 0)
                shown = json.loads(out)
                self.assertEqual(shown["token"], "tok_12...cdef")

    def test_env_overrides_config_and_flags_override_env(self) -> None:
        base = Config(registry_url="https://file.example", timeout_s=10.0)
        with patch.dict(os.environ, {"NBPKG_REGISTRY_URL": "https://env.example", "NBPKG_TIMEOUT_S": "bogus"}):
            from_env = _merge_cfg(base, build_parser().parse_args(["complete", "x"]))
            from_flag = _merge_cfg(base, build_parser().parse_args(["complete", "x", "--registry-url", "https://flag.example"]))

        self.assertEqual(from_env.registry_url, "https://env.example")
        self.assertEqual(from_env.timeout_s, 10.0)
        self.assertEqual(from_flag.registry_url, "https://flag.example")


if __name__ == "__main__":
    unittest.main()
