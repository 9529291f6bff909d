from __future__ import annotations

import json
import logging
import os
import stat
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY_URL = "https://registry.nbpkg.dev"
DEFAULT_TIMEOUT_S = 30.0


@dataclass(frozen=True)
class Config:
    registry_url: str = DEFAULT_REGISTRY_URL
    token: str | None = None
    timeout_s: float = DEFAULT_TIMEOUT_S


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("NBPKG_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("nbpkg") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed config file %s", path)
        return Config()
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in fields(Config)}
    if unknown := sorted(set(raw) - allowed):
        logger.debug("Ignoring unknown config keys in %s: %s", path, ", ".join(unknown))
    values: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    if "timeout_s" in values:
        try:
            values["timeout_s"] = float(values["timeout_s"])
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid timeout_s in %s", path)
            del values["timeout_s"]
    return Config(**values)


def apply_env_overrides(cfg: Config) -> Config:
    """Layer NBPKG_REGISTRY_URL, NBPKG_TOKEN and NBPKG_TIMEOUT_S over a loaded config."""
    timeout_s = cfg.timeout_s
    if raw_timeout := os.getenv("NBPKG_TIMEOUT_S"):
        try:
            timeout_s = float(raw_timeout)
        except ValueError:
            logger.warning("Ignoring invalid NBPKG_TIMEOUT_S=%r", raw_timeout)
    return replace(
        cfg,
        registry_url=os.getenv("NBPKG_REGISTRY_URL") or cfg.registry_url,
        token=os.getenv("NBPKG_TOKEN") or cfg.token,
        timeout_s=timeout_s,
    )


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    # Best-effort permissions hardening (the token lives here).
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def redact_token(token: str | None) -> str | None:
    if not token:
        return token
    if len(token) <= 10:
        return token[:2] + "..." + token[-2:]
    return token[:6] + "..." + token[-4:]
