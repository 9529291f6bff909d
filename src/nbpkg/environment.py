from __future__ import annotations

import json
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any

from .registry import STDLIB
from .versions import caret_range

logger = logging.getLogger(__name__)

DECLARATIONS_FILENAME = "nbpkg.json"
LOCK_FILENAME = "nbpkg.lock.json"
PACKAGES_DIRNAME = "packages"
SCHEMA_VERSION = 1


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)


def _read_json_object(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed environment file %s", path)
        return {}
    return raw if isinstance(raw, dict) else {}


def _str_mapping(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {k: v for k, v in raw.items() if isinstance(k, str) and isinstance(v, str)}


class PackageEnvironment:
    """
    A package environment on disk: declared dependencies and compat ranges in
    ``nbpkg.json``, the resolved lock in ``nbpkg.lock.json``, and materialized
    installations under ``packages/``.

    The in-memory state is the source of truth while a sync runs; `write()` persists it.
    """

    def __init__(self, env_dir: Path) -> None:
        self.env_dir = Path(env_dir).expanduser().resolve()
        self.deps: dict[str, str] = {}
        self.compat: dict[str, str] = {}
        self.lock: dict[str, dict[str, Any]] = {}
        # Set for throwaway environments, whose directory is deleted by `discard()`.
        self.temporary = False
        self.load()

    def __repr__(self) -> str:
        return f"PackageEnvironment({str(self.env_dir)!r})"

    @classmethod
    def create(cls, env_dir: Path) -> "PackageEnvironment":
        env = cls(env_dir)
        env.write()
        return env

    @staticmethod
    def exists(env_dir: Path) -> bool:
        return (Path(env_dir).expanduser() / DECLARATIONS_FILENAME).is_file()

    @property
    def declarations_path(self) -> Path:
        return self.env_dir / DECLARATIONS_FILENAME

    @property
    def lock_path(self) -> Path:
        return self.env_dir / LOCK_FILENAME

    @property
    def packages_dir(self) -> Path:
        return self.env_dir / PACKAGES_DIRNAME

    def load(self) -> None:
        declarations = _read_json_object(self.declarations_path)
        self.deps = _str_mapping(declarations.get("deps"))
        self.compat = _str_mapping(declarations.get("compat"))

        packages = _read_json_object(self.lock_path).get("packages")
        self.lock = {}
        if isinstance(packages, dict):
            for name, entry in packages.items():
                if isinstance(name, str) and isinstance(entry, dict):
                    self.lock[name] = dict(entry)

    def write(self) -> None:
        _write_json_atomic(
            self.declarations_path,
            {"schema_version": SCHEMA_VERSION, "deps": dict(self.deps), "compat": dict(self.compat)},
        )
        _write_json_atomic(self.lock_path, {"schema_version": SCHEMA_VERSION, "packages": dict(self.lock)})

    def declared_dependency_names(self) -> set[str]:
        return set(self.deps)

    def resolved_version(self, name: str) -> str | None:
        """Locked version of `name`, ``"stdlib"`` for a standard library, or None if not locked."""
        entry = self.lock.get(name)
        if entry is None:
            return None
        if entry.get("stdlib"):
            return STDLIB
        version = entry.get("version")
        return version if isinstance(version, str) and version else None

    def resolved_names(self, *, include_stdlib: bool = False) -> set[str]:
        return {name for name, entry in self.lock.items() if include_stdlib or not entry.get("stdlib")}

    def write_compat_entry(self, name: str, range_string: str) -> None:
        self.compat[name] = range_string
        self.write()

    def clear_compat_entry_if_matches(self, name: str, range_string: str) -> bool:
        if self.compat.get(name) != range_string:
            return False
        del self.compat[name]
        self.write()
        return True

    def discard(self) -> None:
        if not self.temporary:
            return
        logger.info("Deleting temporary environment %s", self.env_dir)
        shutil.rmtree(self.env_dir, ignore_errors=True)


def create_empty_environment() -> PackageEnvironment:
    env = PackageEnvironment.create(Path(tempfile.mkdtemp(prefix="nbpkg-env-")))
    env.temporary = True
    return env


def _semver_compat_for(env: PackageEnvironment, name: str) -> str | None:
    version = env.resolved_version(name)
    if version is None or version == STDLIB:
        return None
    return caret_range(version)


def write_semver_compat_entries(env: PackageEnvironment) -> None:
    for name in sorted(env.deps):
        if name in env.compat:
            continue
        compat = _semver_compat_for(env, name)
        if compat is not None:
            env.write_compat_entry(name, compat)


def clear_semver_compat_entries(env: PackageEnvironment) -> None:
    # Only ranges this tool wrote itself are dropped; hand-written ranges stay.
    for name in sorted(env.compat):
        compat = _semver_compat_for(env, name)
        if compat is not None:
            env.clear_compat_entry_if_matches(name, compat)
