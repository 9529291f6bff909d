from __future__ import annotations

import re
from functools import cmp_to_key
from typing import Iterable

from .client import NbpkgError

ANY_VERSION = "latest"


def normalize_requirement(value: str | None) -> str:
    raw = (value or "").strip()
    return raw if raw else ANY_VERSION


def _split_version(version: str) -> tuple[tuple[int, ...], tuple[str, ...] | None]:
    if not isinstance(version, str):
        raise ValueError("version must be str")
    raw = version.strip()
    if not raw:
        raise ValueError("empty version")
    raw = raw.split("+", 1)[0]  # ignore build metadata
    if "-" in raw:
        main_s, pre_s = raw.split("-", 1)
        pre_parts = tuple(p for p in pre_s.split(".") if p != "")
    else:
        main_s = raw
        pre_parts = None
    main_parts = main_s.split(".")
    if any(not p.isdigit() for p in main_parts):
        raise ValueError(f"Unsupported version format: {version!r}")
    nums = [int(p) for p in main_parts]
    while len(nums) < 3:
        nums.append(0)
    return tuple(nums), pre_parts


def compare_versions(a: str, b: str) -> int:
    try:
        ma, pa = _split_version(a)
        mb, pb = _split_version(b)
    except ValueError:
        if a < b:
            return -1
        if a > b:
            return 1
        return 0
    if ma < mb:
        return -1
    if ma > mb:
        return 1

    if pa is None and pb is None:
        return 0
    if pa is None:
        return 1
    if pb is None:
        return -1

    for i in range(max(len(pa), len(pb))):
        if i >= len(pa):
            return -1
        if i >= len(pb):
            return 1
        x = pa[i]
        y = pb[i]
        if x.isdigit() and y.isdigit():
            if int(x) != int(y):
                return -1 if int(x) < int(y) else 1
            continue
        if x.isdigit() != y.isdigit():
            # Numeric identifiers sort before alphanumeric ones.
            return -1 if x.isdigit() else 1
        if x != y:
            return -1 if x < y else 1
    return 0


def sort_versions(versions: Iterable[str], *, reverse: bool = False) -> list[str]:
    return sorted(versions, key=cmp_to_key(compare_versions), reverse=reverse)


def caret_range(version: str) -> str:
    """Compat range string recorded for a resolved version, e.g. ``"^1.4.2"``."""
    return "^" + str(version).strip()


def _lower_bound(major: int, minor: int, patch: int, pre: tuple[str, ...] | None) -> str:
    # A prerelease base must satisfy its own range.
    suffix = "-" + ".".join(pre) if pre else ""
    return f">={major}.{minor}.{patch}{suffix}"


def _expand_caret(spec: str) -> list[str]:
    nums, pre = _split_version(spec[1:].strip())
    major, minor, patch = nums[:3]
    lower = _lower_bound(major, minor, patch, pre)
    if major > 0:
        upper = f"<{major + 1}.0.0"
    elif minor > 0:
        upper = f"<0.{minor + 1}.0"
    else:
        upper = f"<0.0.{patch + 1}"
    return [lower, upper]


def _expand_tilde(spec: str) -> list[str]:
    nums, pre = _split_version(spec[1:].strip())
    major, minor, patch = nums[:3]
    return [_lower_bound(major, minor, patch, pre), f"<{major}.{minor + 1}.0"]


def _split_specifier(specifier: str) -> list[str]:
    s = specifier.strip().replace(",", " ")
    tokens = [t for t in s.split() if t]
    if not tokens:
        return [ANY_VERSION]
    out: list[str] = []
    for token in tokens:
        if token.startswith(("^", "~")):
            expand = _expand_caret if token.startswith("^") else _expand_tilde
            try:
                out.extend(expand(token))
            except ValueError as e:
                raise NbpkgError(f"Invalid version requirement: {token!r}") from e
            continue
        out.append(token)
    return out


_COMPARATOR_RE = re.compile(r"^(>=|<=|>|<|==|=)?\s*([0-9A-Za-z][0-9A-Za-z.\-+]*)$")


def version_satisfies(version: str, specifier: str) -> bool:
    for token in _split_specifier(specifier):
        if token.strip().lower() in (ANY_VERSION, "*"):
            continue

        m = _COMPARATOR_RE.match(token.strip())
        if not m:
            return False

        op = m.group(1) or "="
        cmp = compare_versions(version, m.group(2))
        if op in ("=", "==") and cmp != 0:
            return False
        if op == ">" and cmp <= 0:
            return False
        if op == ">=" and cmp < 0:
            return False
        if op == "<" and cmp >= 0:
            return False
        if op == "<=" and cmp > 0:
            return False
    return True


def extract_exact_version(specifier: str) -> str | None:
    tokens = _split_specifier(specifier)
    if len(tokens) != 1:
        return None
    token = tokens[0].strip()
    if not token or token.lower() in (ANY_VERSION, "*"):
        return None
    if token.startswith(("^", "~", ">", "<")):
        return None

    m = _COMPARATOR_RE.match(token)
    if not m:
        return None
    if (m.group(1) or "=") in ("=", "=="):
        return m.group(2)
    return None
