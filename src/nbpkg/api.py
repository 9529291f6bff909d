"""
Functions a document calls to manage its own environment.

Referencing any of these from a document switches automatic syncing off for it
(see `nbpkg.usage.DIRECT_ENTRY_POINTS`).
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from .client import NbpkgError, RegistryClient
from .config import apply_env_overrides, load_config
from .environment import PackageEnvironment
from .registry import ApiReleaseRepository, PackageRegistry
from .resolver import PreserveLevel, Resolver

logger = logging.getLogger(__name__)

_active: PackageEnvironment | None = None
_active_path: list[str] | None = None


def active_environment() -> PackageEnvironment | None:
    return _active


def activate(env_dir: str | Path | None = None, *, search_path: list[str] | None = None) -> PackageEnvironment | None:
    """
    Make `env_dir` the active environment and put its packages first on the module
    search path. The environment is created if missing.

    Called without `env_dir`, deactivates the current environment and takes its
    entry back off the search path.
    """
    global _active, _active_path

    if _active is not None and _active_path is not None:
        entry = str(_active.packages_dir)
        if entry in _active_path:
            _active_path.remove(entry)
        logger.info("Deactivated %s", _active.env_dir)
    _active = None
    _active_path = None

    if env_dir is None:
        return None

    path = sys.path if search_path is None else search_path
    env_dir = Path(env_dir)
    env = PackageEnvironment(env_dir) if PackageEnvironment.exists(env_dir) else PackageEnvironment.create(env_dir)
    env.packages_dir.mkdir(parents=True, exist_ok=True)
    path.insert(0, str(env.packages_dir))
    _active = env
    _active_path = path
    logger.info("Activated %s", env.env_dir)
    return env


def add(
    *names: str,
    preserve: PreserveLevel = PreserveLevel.ALL,
    resolver: Resolver | None = None,
) -> PackageEnvironment:
    """Add packages to the active environment and install them."""
    env = _active
    if env is None:
        raise NbpkgError("No active environment. Call nbpkg.activate(env_dir) first.")
    if not names:
        return env

    client: RegistryClient | None = None
    if resolver is None:
        cfg = apply_env_overrides(load_config())
        client = RegistryClient(registry_url=cfg.registry_url, token=cfg.token, timeout_s=cfg.timeout_s)
        resolver = Resolver(PackageRegistry(ApiReleaseRepository(client)))
    try:
        resolver.add(env, names, preserve=preserve)
        resolver.instantiate(env)
    finally:
        if client is not None:
            client.close()
    return env
