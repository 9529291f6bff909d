from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Iterable

from .client import NbpkgError
from .environment import (
    PackageEnvironment,
    clear_semver_compat_entries,
    create_empty_environment,
    write_semver_compat_entries,
)
from .resolver import TIERS, PreserveLevel, ResolutionError, Resolver
from .usage import uses_managed_packages

logger = logging.getLogger(__name__)

RESTART_RECOMMENDED_MSG = "Packages were removed or updated. Restart the document process to load the new versions."
RESTART_REQUIRED_MSG = "Already loaded packages changed version. Restart the document process to use them."


class SyncError(NbpkgError):
    def __init__(self, message: str, *, packages: Iterable[str], preserve: PreserveLevel) -> None:
        super().__init__(message)
        self.packages = tuple(packages)
        self.preserve = preserve


@dataclass(frozen=True)
class SyncResult:
    did_perform_work: bool
    tier_used: PreserveLevel
    restart_recommended: bool
    restart_required: bool


@dataclass
class DocumentPackages:
    """Package state the coordinator keeps for one document between syncs."""

    environment: PackageEnvironment | None = None
    instantiated: bool = False
    restart_recommended_msg: str | None = None
    restart_required_msg: str | None = None

    def record_advisory(self, result: SyncResult) -> None:
        if result.restart_required:
            self.restart_required_msg = RESTART_REQUIRED_MSG
        elif result.restart_recommended:
            self.restart_recommended_msg = RESTART_RECOMMENDED_MSG

    def acknowledge_restart(self) -> None:
        self.restart_recommended_msg = None
        self.restart_required_msg = None


class PackageCoordinator:
    """
    Keeps document environments in sync with their imports.

    One coordinator is shared by every document in the process. Its lock serializes all
    environment mutations because the resolver, the registry cache and ``sys.path`` are
    process-global; the diff itself is computed outside the lock.
    """

    def __init__(
        self,
        resolver: Resolver,
        *,
        lock: threading.Lock | None = None,
        environment_factory: Callable[[], PackageEnvironment] = create_empty_environment,
    ) -> None:
        self.resolver = resolver
        self.registry = resolver.registry
        self._lock = lock if lock is not None else threading.Lock()
        self._environment_factory = environment_factory

    def synchronize(
        self,
        state: DocumentPackages,
        previous: Iterable[str],
        current: Iterable[str],
        *,
        references: Iterable[str] = (),
    ) -> tuple[PackageEnvironment | None, SyncResult]:
        """
        Bring `state.environment` in line with the `current` import set.

        `references` are the dotted names used by the document; calls into the package
        manager itself switch managed tracking off. Returns the (possibly new or dropped)
        environment together with the restart classification. Raises `SyncError` when no
        preservation tier can add the new packages.
        """
        previous = set(previous)
        current = set(current)
        forced = False

        env = state.environment
        is_managed = uses_managed_packages(references)

        if env is None and is_managed:
            logger.info("Started managing packages for this document.")
            forced = True
            state.environment = self._environment_factory()
            state.instantiated = False
        if env is not None and not is_managed:
            logger.info("Stopped managing packages for this document.")
            no_packages_loaded_yet = (
                state.restart_required_msg is None
                and state.restart_recommended_msg is None
                and all(self.registry.is_stdlib(name) for name in env.declared_dependency_names())
            )
            forced = not no_packages_loaded_yet
            state.environment = None
            env.discard()

        if state.environment is None:
            result = SyncResult(
                did_perform_work=forced,
                tier_used=PreserveLevel.ALL,
                restart_recommended=forced,
                restart_required=forced,
            )
        else:
            logger.debug(
                "Imports added since last sync: %s, removed: %s",
                sorted(current - previous),
                sorted(previous - current),
            )
            result = self._sync_environment(state, state.environment, current, forced=forced)

        state.record_advisory(result)
        return state.environment, result

    def _sync_environment(
        self,
        state: DocumentPackages,
        env: PackageEnvironment,
        current: set[str],
        *,
        forced: bool,
    ) -> SyncResult:
        declared = env.declared_dependency_names()
        to_remove = sorted(declared - current)
        # Unknown names are usually local modules, not an error.
        to_add = sorted(name for name in current - declared if self.registry.package_exists(name))
        tier_used = PreserveLevel.ALL

        if self._lock.locked():
            logger.info("Waiting for other documents to finish package operations...")
        with self._lock:
            before_keys = env.resolved_names()
            if to_remove:
                logger.info("Removing %s from %s", ", ".join(to_remove), env.env_dir)
                self.resolver.remove(env, to_remove)
            # Removing a package may drop transitive dependencies too, or nothing at all.
            after_keys = env.resolved_names()

            if to_add:
                clear_semver_compat_entries(env)
                tier_used = self._add_with_fallback(env, to_add)
                write_semver_compat_entries(env)

            should_instantiate = not state.instantiated or bool(to_add) or bool(to_remove)
            if should_instantiate:
                logger.info("Instantiating %s", env.env_dir)
                self.resolver.instantiate(env)
                state.instantiated = True

        return SyncResult(
            did_perform_work=forced or should_instantiate,
            tier_used=tier_used,
            restart_recommended=(
                forced
                or (bool(to_remove) and before_keys != after_keys)
                or tier_used is not PreserveLevel.ALL
            ),
            restart_required=forced or tier_used in (PreserveLevel.SEMVER, PreserveLevel.NONE),
        )

    def _add_with_fallback(self, env: PackageEnvironment, to_add: list[str]) -> PreserveLevel:
        for tier in TIERS:
            try:
                self.resolver.add(env, to_add, preserve=tier)
            except ResolutionError as e:
                if tier is TIERS[-1]:
                    raise SyncError(
                        f"Could not add {', '.join(to_add)} to {env.env_dir}: resolution failed at every tier "
                        f"up to {tier.label}. {e}",
                        packages=to_add,
                        preserve=tier,
                    ) from e
                logger.info("Adding %s failed with %s, trying a looser tier.", ", ".join(to_add), tier.label)
                continue
            logger.info("Added %s with %s", ", ".join(to_add), tier.label)
            return tier
        raise AssertionError("unreachable")
