from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import textwrap
from pathlib import Path

from ._version import __version__
from .client import NbpkgError, NbpkgHTTPError, RegistryClient
from .config import Config, apply_env_overrides, load_config, redact_token, save_config
from .environment import PackageEnvironment
from .registry import ApiReleaseRepository, PackageRegistry
from .resolver import Resolver
from .sync import DocumentPackages, PackageCoordinator
from .usage import collect_references, external_package_names


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    cfg = apply_env_overrides(base)
    return Config(
        registry_url=getattr(args, "registry_url", None) or cfg.registry_url,
        token=getattr(args, "token", None) or cfg.token,
        timeout_s=getattr(args, "timeout_s", None) or cfg.timeout_s,
    )


def _configure_logging(verbosity: int) -> None:
    level_name = os.getenv("NBPKG_LOG_LEVEL")
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    elif level_name:
        level = getattr(logging, level_name.upper(), logging.WARNING)
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    for row in rows:
        print("  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip())


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="nbpkg",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Keep a document's package environment in sync with its imports.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              NBPKG_REGISTRY_URL, NBPKG_TOKEN, NBPKG_TIMEOUT_S, NBPKG_CONFIG_PATH, NBPKG_LOG_LEVEL
            """
        ),
    )

    def _add_runtime_overrides(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--registry-url", help="Package registry base URL")
        parser.add_argument("--token", help="Registry auth token (overrides config/env)")
        parser.add_argument("--timeout-s", type=float, help="HTTP timeout in seconds")

    _add_runtime_overrides(p)
    p.add_argument("-v", "--verbose", action="count", default=0, help="Log progress (-vv for debug output)")
    p.add_argument("--version", action="version", version=f"nbpkg {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config (token redacted)")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--registry-url")
    cfg_set.add_argument("--token")
    cfg_set.add_argument("--timeout-s", type=float)

    sync = sub.add_parser("sync", help="Synchronize an environment with the imports of a document")
    _add_runtime_overrides(sync)
    sync.add_argument("files", nargs="+", help="Source files of the document, one per cell")
    sync.add_argument("--env-dir", required=True, help="Environment directory (created if missing)")
    sync.add_argument("--json", action="store_true", help="Output JSON")

    versions = sub.add_parser("versions", help="List installable versions of a package")
    _add_runtime_overrides(versions)
    versions.add_argument("name")
    versions.add_argument("--json", action="store_true", help="Output JSON")

    complete = sub.add_parser("complete", help="Complete a partial package name")
    _add_runtime_overrides(complete)
    complete.add_argument("prefix")

    return p


def _make_runtime_client(args: argparse.Namespace) -> RegistryClient:
    cfg = _merge_cfg(load_config(), args)
    if not cfg.registry_url:
        raise NbpkgError("Missing registry_url. Set it via --registry-url or NBPKG_REGISTRY_URL or config.")
    return RegistryClient(registry_url=cfg.registry_url, token=cfg.token, timeout_s=cfg.timeout_s)


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        from .config import config_path

        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = load_config()
        d = cfg.__dict__.copy()
        d["token"] = redact_token(cfg.token)
        print(json.dumps(d, indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        new_cfg = Config(
            registry_url=args.registry_url or cfg.registry_url,
            token=args.token if args.token is not None else cfg.token,
            timeout_s=args.timeout_s if args.timeout_s is not None else cfg.timeout_s,
        )
        path = save_config(new_cfg)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def cmd_sync(args: argparse.Namespace) -> int:
    env_dir = Path(args.env_dir).expanduser()
    sources = [Path(f).read_text(encoding="utf-8") for f in args.files]
    current = external_package_names(sources)
    references = collect_references(sources)

    state = DocumentPackages()
    previous: set[str] = set()
    if PackageEnvironment.exists(env_dir):
        state.environment = PackageEnvironment(env_dir)
        previous = state.environment.declared_dependency_names()

    client = _make_runtime_client(args)
    try:
        resolver = Resolver(PackageRegistry(ApiReleaseRepository(client)))
        coordinator = PackageCoordinator(resolver, environment_factory=lambda: PackageEnvironment.create(env_dir))
        env, result = coordinator.synchronize(state, previous, current, references=references)
    finally:
        client.close()

    payload = {
        "env_dir": str(env.env_dir) if env is not None else None,
        "managed": env is not None,
        "did_perform_work": result.did_perform_work,
        "tier_used": result.tier_used.label,
        "restart_recommended": result.restart_recommended,
        "restart_required": result.restart_required,
        "dependencies": sorted(env.declared_dependency_names()) if env is not None else [],
    }
    if args.json:
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0

    if env is None:
        print("Package management is off for this document (it calls nbpkg directly).")
    else:
        print(f"env: {env.env_dir}")
    _print_table(
        [
            ["FIELD", "VALUE"],
            ["did_perform_work", str(result.did_perform_work).lower()],
            ["tier_used", result.tier_used.label],
            ["restart_recommended", str(result.restart_recommended).lower()],
            ["restart_required", str(result.restart_required).lower()],
        ]
    )
    for name in payload["dependencies"]:
        print(f"dependency: {name}")
    return 0


def cmd_versions(args: argparse.Namespace) -> int:
    client = _make_runtime_client(args)
    try:
        versions = PackageRegistry(ApiReleaseRepository(client)).package_versions(args.name)
    finally:
        client.close()

    if args.json:
        print(json.dumps({"name": args.name, "versions": versions}, indent=2, sort_keys=True))
        return 0
    if not versions:
        print(f"error: package not found: {args.name}", file=sys.stderr)
        return 1
    for v in versions:
        print(v)
    return 0


def cmd_complete(args: argparse.Namespace) -> int:
    client = _make_runtime_client(args)
    try:
        names = PackageRegistry(ApiReleaseRepository(client)).package_completions(args.prefix)
    finally:
        client.close()
    for name in names:
        print(name)
    return 0


def _format_http_error(err: NbpkgHTTPError) -> str:
    if err.status_code == 401:
        return "HTTP 401 Unauthorized. Missing or invalid registry token."
    if err.status_code == 404:
        return "HTTP 404 Not Found."
    body = err.body.strip()
    return f"HTTP {err.status_code} {body}" if body else f"HTTP {err.status_code}"


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd == "sync":
            return cmd_sync(args)
        if args.cmd == "versions":
            return cmd_versions(args)
        if args.cmd == "complete":
            return cmd_complete(args)
        raise AssertionError("unreachable")
    except NbpkgHTTPError as e:
        print(f"error: {_format_http_error(e)}", file=sys.stderr)
        return 1
    except NbpkgError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
