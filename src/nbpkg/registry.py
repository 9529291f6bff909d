from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from typing import Any, Iterable, Protocol
from urllib.parse import quote, urlsplit, urlunsplit

from .client import NbpkgError, NbpkgHTTPError, PackageNotFoundError, RegistryClient
from .versions import compare_versions, sort_versions

logger = logging.getLogger(__name__)

STDLIB = "stdlib"


@dataclass(frozen=True)
class Dependency:
    name: str
    version_requirement: str | None = None


@dataclass(frozen=True)
class PackageRelease:
    name: str
    version: str
    dependencies: tuple[Dependency, ...] = ()
    sha256: str | None = None
    download_url: str | None = None


class ReleaseRepository(Protocol):
    def list_releases(self, name: str) -> list[PackageRelease]:
        ...

    def get_release(self, name: str, version: str) -> PackageRelease | None:
        ...

    def download_archive(self, release: PackageRelease) -> bytes:
        ...

    def search_packages(self, prefix: str) -> list[str]:
        ...


def _origin(url: str) -> str | None:
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return urlunsplit((parts.scheme, parts.netloc, "", "", "")).rstrip("/")


def _unwrap_success_envelope(obj: Any) -> Any:
    if not isinstance(obj, dict):
        return obj
    if obj.get("success") is True and "data" in obj:
        return obj["data"]
    if obj.get("success") is False and "error" in obj:
        raise NbpkgError(f"API error: {obj.get('error')}")
    return obj


def parse_dependency_entry(raw: Any) -> Dependency | None:
    if isinstance(raw, str):
        spec = raw.strip()
        if not spec:
            return None
        if "@" in spec:
            name, req = spec.split("@", 1)
            return Dependency(name=name.strip(), version_requirement=req.strip() or None)
        return Dependency(name=spec)

    if not isinstance(raw, dict) or not isinstance(raw.get("name"), str) or not raw["name"].strip():
        return None
    vr = raw.get("version_requirement")
    return Dependency(
        name=raw["name"].strip(),
        version_requirement=vr.strip() if isinstance(vr, str) and vr.strip() else None,
    )


def _extract_items(obj: Any) -> list[Any]:
    if isinstance(obj, list):
        return obj
    if isinstance(obj, dict):
        for key in ("items", "releases", "packages", "data"):
            value = obj.get(key)
            if isinstance(value, list):
                return value
        if isinstance(obj.get("release"), dict):
            return [obj["release"]]
        return [obj]
    return []


def parse_release_obj(obj: Any, *, name: str) -> PackageRelease | None:
    if not isinstance(obj, dict):
        return None

    data = obj.get("release") if isinstance(obj.get("release"), dict) else obj
    version = data.get("version")
    if not isinstance(version, str) or not version.strip():
        return None

    deps: list[Dependency] = []
    if isinstance(data.get("dependencies"), list):
        for dep_raw in data["dependencies"]:
            dep = parse_dependency_entry(dep_raw)
            if dep is not None:
                deps.append(dep)

    def _str_field(key: str) -> str | None:
        val = data.get(key)
        if isinstance(val, str) and val.strip():
            return val.strip()
        return None

    return PackageRelease(
        name=name,
        version=version.strip(),
        dependencies=tuple(deps),
        sha256=_str_field("sha256"),
        download_url=_str_field("download_url"),
    )


class ApiReleaseRepository:
    def __init__(self, client: RegistryClient) -> None:
        self._client = client
        self._list_cache: dict[str, list[PackageRelease]] = {}
        self._release_cache: dict[tuple[str, str], PackageRelease | None] = {}

    def clear_cache(self) -> None:
        self._list_cache.clear()
        self._release_cache.clear()

    def _auth_for_url(self, url: str) -> bool:
        if not self._client.token:
            return False
        if url.startswith("/"):
            return True
        url_origin = _origin(url)
        return bool(url_origin and url_origin == _origin(self._client.registry_url))

    def _get_json(self, *, path: str, params: dict[str, Any] | None = None) -> Any:
        return _unwrap_success_envelope(self._client.get_json(path, params=params, auth=self._auth_for_url(path)))

    def list_releases(self, name: str) -> list[PackageRelease]:
        if name in self._list_cache:
            return list(self._list_cache[name])

        path = f"/v1/packages/{quote(name, safe='')}/releases"
        items: list[Any] = []
        try:
            page = 1
            while True:
                data = self._get_json(path=path, params={"page": page, "per_page": 100})
                items.extend(_extract_items(data))
                if not (isinstance(data, dict) and bool(data.get("has_more"))):
                    break
                page += 1
        except NbpkgHTTPError as e:
            if e.status_code != 404:
                raise
            raise PackageNotFoundError(f"Package not found: {name}") from e

        releases: list[PackageRelease] = []
        seen: set[str] = set()
        for item in items:
            rel = parse_release_obj(item, name=name)
            if rel is None or rel.version in seen:
                continue
            seen.add(rel.version)
            releases.append(rel)
            self._release_cache[(name, rel.version)] = rel

        by_version = {r.version: r for r in releases}
        releases = [by_version[v] for v in sort_versions(by_version, reverse=True)]
        self._list_cache[name] = list(releases)
        return releases

    def get_release(self, name: str, version: str) -> PackageRelease | None:
        cache_key = (name, version)
        if cache_key in self._release_cache:
            return self._release_cache[cache_key]

        path = f"/v1/packages/{quote(name, safe='')}/releases/{quote(version, safe='')}"
        try:
            data = self._get_json(path=path)
        except NbpkgHTTPError as e:
            if e.status_code != 404:
                raise
            # Some registries only expose the list endpoint.
            try:
                listed = self.list_releases(name)
            except PackageNotFoundError:
                listed = []
            rel = next((r for r in listed if compare_versions(r.version, version) == 0), None)
            self._release_cache[cache_key] = rel
            return rel
        rel = parse_release_obj(data, name=name)
        self._release_cache[cache_key] = rel
        return rel

    def download_archive(self, release: PackageRelease) -> bytes:
        download_url = release.download_url
        if not download_url:
            refreshed = self.get_release(release.name, release.version)
            if refreshed and refreshed.download_url:
                download_url = refreshed.download_url
        if not download_url:
            raise NbpkgError(f"Release {release.name}@{release.version} has no download URL.")

        resp = self._client.request(method="GET", path=download_url, auth=self._auth_for_url(download_url))
        return resp.content

    def search_packages(self, prefix: str) -> list[str]:
        data = self._get_json(path="/v1/packages", params={"prefix": prefix})
        names: list[str] = []
        for item in _extract_items(data):
            if isinstance(item, str):
                names.append(item)
            elif isinstance(item, dict) and isinstance(item.get("name"), str):
                names.append(item["name"])
        return [n for n in names if n.startswith(prefix)]


class PackageRegistry:
    """
    Registry facade used by the resolver and the sync engine.

    Lookups that fail because the registry is unreachable degrade instead of raising:
    `package_versions` reports ``["latest"]`` so the name is still treated as installable,
    and completions fall back to standard library names only.
    """

    def __init__(self, repo: ReleaseRepository, *, stdlibs: Iterable[str] | None = None) -> None:
        self.repo = repo
        self._stdlibs = frozenset(stdlibs) if stdlibs is not None else frozenset(sys.stdlib_module_names)
        self._versions_cache: dict[str, list[str]] = {}

    @property
    def stdlibs(self) -> frozenset[str]:
        return self._stdlibs

    def is_stdlib(self, name: str) -> bool:
        return name in self._stdlibs

    def package_versions(self, name: str) -> list[str]:
        """
        Return all registered versions of `name`, oldest first. Returns ``["stdlib"]`` for
        standard library modules and ``[]`` for unknown packages.
        """
        if self.is_stdlib(name):
            return [STDLIB]
        if name in self._versions_cache:
            return list(self._versions_cache[name])
        try:
            versions = sort_versions(r.version for r in self.repo.list_releases(name))
        except PackageNotFoundError:
            versions = []
        except NbpkgError:
            logger.error("Failed to get installable versions of %s.", name, exc_info=True)
            return ["latest"]
        self._versions_cache[name] = versions
        return list(versions)

    def package_exists(self, name: str) -> bool:
        return bool(self.package_versions(name))

    def package_completions(self, partial_name: str) -> list[str]:
        stdlib_matches = sorted(s for s in self._stdlibs if s.startswith(partial_name))
        try:
            registered = self.repo.search_packages(partial_name)
        except NbpkgError:
            logger.error("Failed to autocomplete package names.", exc_info=True)
            registered = []
        return stdlib_matches + [n for n in registered if n not in self._stdlibs]

    def refresh_registry_cache(self) -> None:
        self._versions_cache.clear()
        clear = getattr(self.repo, "clear_cache", None)
        if callable(clear):
            clear()
