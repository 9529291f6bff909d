import io
import zipfile

from nbpkg.client import NbpkgError, PackageNotFoundError
from nbpkg.registry import Dependency, PackageRelease
from nbpkg.versions import compare_versions

STDLIBS = frozenset({"json", "os", "sys", "re"})


def release(name: str, version: str, *deps: str) -> PackageRelease:
    parsed = []
    for dep in deps:
        dep_name, _, req = dep.partition("@")
        parsed.append(Dependency(name=dep_name, version_requirement=req or None))
    return PackageRelease(
        name=name,
        version=version,
        dependencies=tuple(parsed),
        download_url=f"https://files.example.invalid/{name}-{version}.zip",
    )


def archive_for(name: str, version: str) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(f"{name}/__init__.py", f"__version__ = {version!r}\n")
    return buf.getvalue()


class FakeRepo:
    def __init__(self, releases: dict[str, list[PackageRelease]]) -> None:
        self._releases = releases
        self.downloads: list[tuple[str, str]] = []
        self.offline = False

    def list_releases(self, name: str) -> list[PackageRelease]:
        if self.offline:
            raise NbpkgError("Request failed: offline")
        if name not in self._releases:
            raise PackageNotFoundError(f"Package not found: {name}")
        return list(self._releases[name])

    def get_release(self, name: str, version: str) -> PackageRelease | None:
        for rel in self._releases.get(name, []):
            if compare_versions(rel.version, version) == 0:
                return rel
        return None

    def download_archive(self, release: PackageRelease) -> bytes:
        self.downloads.append((release.name, release.version))
        return archive_for(release.name, release.version)

    def search_packages(self, prefix: str) -> list[str]:
        if self.offline:
            raise NbpkgError("Request failed: offline")
        return sorted(n for n in self._releases if n.startswith(prefix))
