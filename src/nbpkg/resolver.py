from __future__ import annotations

import copy
import hashlib
import importlib
import io
import json
import logging
import os
import shutil
import sys
import tempfile
import zipfile
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import IntEnum
from pathlib import Path
from typing import Any, Iterable, Iterator

from .client import NbpkgError
from .environment import PackageEnvironment
from .registry import PackageRegistry, PackageRelease, ReleaseRepository, parse_dependency_entry
from .versions import caret_range, extract_exact_version, normalize_requirement, sort_versions, version_satisfies

logger = logging.getLogger(__name__)

INSTALL_META_FILENAME = ".nbpkg-meta.json"


class PreserveLevel(IntEnum):
    """How much of the existing lock the resolver must keep. Higher values allow more churn."""

    ALL = 0
    DIRECT = 1
    SEMVER = 2
    NONE = 3

    @property
    def label(self) -> str:
        return "preserve-" + self.name.lower()


TIERS: tuple[PreserveLevel, ...] = (
    PreserveLevel.ALL,
    PreserveLevel.DIRECT,
    PreserveLevel.SEMVER,
    PreserveLevel.NONE,
)


class ResolutionError(NbpkgError):
    def __init__(self, message: str, *, packages: Iterable[str], preserve: PreserveLevel) -> None:
        super().__init__(message)
        self.packages = tuple(packages)
        self.preserve = preserve


@dataclass(frozen=True)
class Requirement:
    specifier: str
    source: str


def _version_satisfies_all(version: str, requirements: list[Requirement]) -> bool:
    return all(version_satisfies(version, r.specifier) for r in requirements)


def _format_requirement_debug(requirements: list[Requirement]) -> str:
    parts = [f"{r.specifier} (from {r.source})" for r in requirements]
    return ", ".join(parts) if parts else "<none>"


def _candidate_releases(name: str, requirements: list[Requirement], repo: ReleaseRepository) -> list[PackageRelease]:
    exact_versions = {v for r in requirements if (v := extract_exact_version(r.specifier)) is not None}
    if len(exact_versions) > 1:
        raise NbpkgError(
            f"Dependency conflict for {name}: multiple exact versions requested "
            f"({', '.join(sort_versions(exact_versions))}). Constraints: {_format_requirement_debug(requirements)}"
        )

    # Locked packages collapse to one exact version; a direct lookup avoids listing every release.
    if len(exact_versions) == 1:
        rel = repo.get_release(name, next(iter(exact_versions)))
        if rel and _version_satisfies_all(rel.version, requirements):
            return [rel]

    releases = repo.list_releases(name)
    by_version = {r.version: r for r in releases}
    matched = [by_version[v] for v in sort_versions(by_version, reverse=True)]
    matched = [r for r in matched if _version_satisfies_all(r.version, requirements)]
    if matched:
        return matched
    raise NbpkgError(f"No release found for {name} that satisfies constraints: {_format_requirement_debug(requirements)}")


def resolve_dependency_graph(
    *,
    direct_requirements: dict[str, str],
    repo: ReleaseRepository,
    pins: dict[str, str] | None = None,
    stdlibs: frozenset[str] = frozenset(),
) -> dict[str, PackageRelease]:
    """
    Backtracking search for one release per package reachable from `direct_requirements`.

    `pins` constrain packages only if they end up in the graph; they never pull a package in.
    Dependencies on standard library modules are skipped.
    """
    constraints: dict[str, list[Requirement]] = {}
    pending: list[str] = []
    last_error: NbpkgError | None = None

    for name, spec in sorted((pins or {}).items()):
        constraints.setdefault(name, []).append(Requirement(specifier=spec, source="lock"))
    for name, spec in sorted(direct_requirements.items()):
        constraints.setdefault(name, []).append(Requirement(specifier=normalize_requirement(spec), source="direct"))
        if name not in pending:
            pending.append(name)

    def _search(
        *,
        selected: dict[str, PackageRelease],
        constraints_map: dict[str, list[Requirement]],
        pending_names: list[str],
    ) -> dict[str, PackageRelease] | None:
        selected_mut = dict(selected)
        pending_mut = list(dict.fromkeys(pending_names))

        # If constraints changed for already-selected nodes, revisit those nodes.
        for name in list(selected_mut.keys()):
            if _version_satisfies_all(selected_mut[name].version, constraints_map.get(name, [])):
                continue
            selected_mut.pop(name)
            if name not in pending_mut:
                pending_mut.insert(0, name)

        if not pending_mut:
            return selected_mut

        name = pending_mut[0]
        rest = pending_mut[1:]

        nonlocal last_error
        try:
            candidates = _candidate_releases(name, constraints_map.get(name, []), repo)
        except NbpkgError as e:
            last_error = e
            return None
        for candidate in candidates:
            selected_next = dict(selected_mut)
            selected_next[name] = candidate
            constraints_next = copy.deepcopy(constraints_map)
            pending_next = list(rest)

            for dep in candidate.dependencies:
                if dep.name in stdlibs:
                    continue
                constraints_next.setdefault(dep.name, []).append(
                    Requirement(
                        specifier=normalize_requirement(dep.version_requirement),
                        source=f"{name}@{candidate.version}",
                    )
                )
                if dep.name in selected_next and not _version_satisfies_all(
                    selected_next[dep.name].version, constraints_next[dep.name]
                ):
                    selected_next.pop(dep.name)
                if dep.name not in selected_next and dep.name not in pending_next:
                    pending_next.append(dep.name)

            solved = _search(selected=selected_next, constraints_map=constraints_next, pending_names=pending_next)
            if solved is not None:
                return solved
        return None

    solved = _search(selected={}, constraints_map=constraints, pending_names=pending)
    if solved is None:
        if last_error:
            raise NbpkgError(f"Could not resolve dependency graph. Last error: {last_error}") from last_error
        raise NbpkgError("Could not resolve dependency graph.")
    return solved


def preserved_pins(env: PackageEnvironment, preserve: PreserveLevel) -> dict[str, str]:
    """Constraints that keep already-locked packages in place at the given tier."""
    pins: dict[str, str] = {}
    if preserve is PreserveLevel.NONE:
        return pins
    for name in sorted(env.resolved_names()):
        version = env.resolved_version(name)
        if version is None:
            continue
        if preserve is PreserveLevel.ALL:
            pins[name] = f"={version}"
        elif preserve is PreserveLevel.DIRECT:
            if name in env.deps:
                pins[name] = f"={version}"
        else:
            pins[name] = caret_range(version)
    return pins


def _lock_entry(release: PackageRelease) -> dict[str, Any]:
    deps: list[dict[str, str]] = []
    for dep in sorted(release.dependencies, key=lambda d: d.name):
        dep_obj = {"name": dep.name}
        if dep.version_requirement:
            dep_obj["version_requirement"] = dep.version_requirement
        deps.append(dep_obj)
    entry: dict[str, Any] = {"version": release.version, "dependencies": deps}
    if release.sha256:
        entry["sha256"] = release.sha256
    if release.download_url:
        entry["download_url"] = release.download_url
    return entry


def _prune_lock(lock: dict[str, dict[str, Any]], *, roots: Iterable[str]) -> dict[str, dict[str, Any]]:
    reachable: set[str] = set()
    stack = [r for r in roots if r in lock]
    while stack:
        name = stack.pop()
        if name in reachable:
            continue
        reachable.add(name)
        for raw in lock[name].get("dependencies") or []:
            dep = parse_dependency_entry(raw)
            if dep is not None and dep.name in lock and dep.name not in reachable:
                stack.append(dep.name)
    return {name: entry for name, entry in lock.items() if name in reachable}


@contextmanager
def prepended_search_path(entry: str, *, search_path: list[str] | None = None) -> Iterator[None]:
    """Put `entry` at the front of the module search path for the duration of the block."""
    path = sys.path if search_path is None else search_path
    path.insert(0, entry)
    try:
        yield
    finally:
        if path and path[0] == entry:
            del path[0]
        else:
            logger.warning("Module search path was modified while %s was active; removing it anyway.", entry)
            if entry in path:
                path.remove(entry)


def _safe_extract_zip(zip_bytes: bytes, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    base = dest.resolve()
    with zipfile.ZipFile(io.BytesIO(zip_bytes), "r") as zf:
        for info in zf.infolist():
            name = info.filename
            if not name:
                continue
            if name.startswith("/"):
                raise NbpkgError(f"Archive contains an absolute path entry: {name!r}")
            target = (dest / name).resolve()
            if not str(target).startswith(str(base) + os.sep) and target != base:
                raise NbpkgError(f"Archive contains an invalid path entry: {name!r}")

            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue

            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info, "r") as src, target.open("wb") as out:
                shutil.copyfileobj(src, out)


class Resolver:
    """
    Applies add/remove/instantiate operations to a `PackageEnvironment`.

    `add` and `remove` only touch the declarations and the lock; `instantiate` makes the
    lock real under ``packages/``. A failed `add` leaves the environment unchanged.
    """

    def __init__(self, registry: PackageRegistry, *, search_path: list[str] | None = None) -> None:
        self.registry = registry
        self.search_path = search_path

    def add(self, env: PackageEnvironment, names: Iterable[str], *, preserve: PreserveLevel = PreserveLevel.ALL) -> None:
        names = sorted(set(names))
        pins = preserved_pins(env, preserve)
        deps = dict(env.deps)
        for name in names:
            deps.setdefault(name, "latest")

        try:
            lock = self._resolve(deps, env.compat, pins)
        except NbpkgError as e:
            raise ResolutionError(
                f"Could not add {', '.join(names)} with {preserve.label}: {e}",
                packages=names,
                preserve=preserve,
            ) from e

        env.deps = deps
        env.lock = lock
        env.write()

    def remove(self, env: PackageEnvironment, names: Iterable[str]) -> None:
        names = sorted(set(names))
        missing = [n for n in names if n not in env.deps]
        if missing:
            raise NbpkgError(f"Not a declared dependency of {env.env_dir}: {', '.join(missing)}")

        for name in names:
            env.deps.pop(name)
            env.compat.pop(name, None)
        env.lock = _prune_lock(env.lock, roots=env.deps)
        env.write()

    def instantiate(self, env: PackageEnvironment) -> tuple[str, ...]:
        with prepended_search_path(str(env.packages_dir), search_path=self.search_path):
            installed = self._materialize(env)
            importlib.invalidate_caches()
        return installed

    def _resolve(
        self,
        deps: dict[str, str],
        compat: dict[str, str],
        pins: dict[str, str],
    ) -> dict[str, dict[str, Any]]:
        lock: dict[str, dict[str, Any]] = {}
        direct: dict[str, str] = {}
        for name, requirement in deps.items():
            if self.registry.is_stdlib(name):
                lock[name] = {"stdlib": True}
                continue
            spec = normalize_requirement(requirement)
            if name in compat:
                spec = f"{spec} {compat[name]}"
            direct[name] = spec

        if direct:
            resolved = resolve_dependency_graph(
                direct_requirements=direct,
                repo=self.registry.repo,
                pins=pins,
                stdlibs=self.registry.stdlibs,
            )
            for name, release in resolved.items():
                lock[name] = _lock_entry(release)
        return lock

    def _read_installed_version(self, package_dir: Path) -> str | None:
        meta_path = package_dir / INSTALL_META_FILENAME
        if not meta_path.is_file():
            return None
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None
        version = data.get("version") if isinstance(data, dict) else None
        return version if isinstance(version, str) else None

    def _materialize(self, env: PackageEnvironment) -> tuple[str, ...]:
        env.packages_dir.mkdir(parents=True, exist_ok=True)
        locked = env.resolved_names()
        installed: list[str] = []

        for name in sorted(locked):
            entry = env.lock[name]
            version = env.resolved_version(name)
            if version is None:
                raise NbpkgError(f"Lock entry for {name} has no version in {env.lock_path}")
            package_dir = env.packages_dir / name
            if package_dir.is_dir() and self._read_installed_version(package_dir) == version:
                continue

            release = PackageRelease(
                name=name,
                version=version,
                sha256=entry.get("sha256"),
                download_url=entry.get("download_url"),
            )
            zip_bytes = self.registry.repo.download_archive(release)
            if release.sha256 and hashlib.sha256(zip_bytes).hexdigest() != release.sha256:
                raise NbpkgError(f"Checksum mismatch for {name}@{version}")
            self._install_archive(env, release=release, zip_bytes=zip_bytes)
            installed.append(name)

        for child in sorted(env.packages_dir.iterdir()):
            if child.is_dir() and not child.name.startswith(".") and child.name not in locked:
                shutil.rmtree(child)
                logger.debug("Removed stale installation %s", child)

        return tuple(installed)

    def _install_archive(self, env: PackageEnvironment, *, release: PackageRelease, zip_bytes: bytes) -> None:
        dest = env.packages_dir / release.name
        tmp_root = env.packages_dir / ".tmp"
        tmp_root.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(prefix="nbpkg-", dir=tmp_root) as td:
            unpack_root = Path(td) / "unpacked"
            _safe_extract_zip(zip_bytes, unpack_root)

            # Archives usually wrap everything in one top-level folder.
            source_root = unpack_root
            children = list(unpack_root.iterdir())
            if len(children) == 1 and children[0].is_dir():
                source_root = children[0]

            backup = dest.with_name(dest.name + ".nbpkg-backup")
            had_existing = dest.exists()
            if backup.exists():
                shutil.rmtree(backup, ignore_errors=True)
            if had_existing:
                dest.rename(backup)

            try:
                shutil.move(str(source_root), str(dest))
                meta = {
                    "name": release.name,
                    "version": release.version,
                    "sha256": release.sha256,
                    "installed_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
                }
                (dest / INSTALL_META_FILENAME).write_text(json.dumps(meta, indent=2, sort_keys=True) + "\n", encoding="utf-8")
            except Exception:
                if dest.exists():
                    shutil.rmtree(dest, ignore_errors=True)
                if had_existing and backup.exists():
                    backup.rename(dest)
                raise
            finally:
                if backup.exists():
                    shutil.rmtree(backup, ignore_errors=True)
