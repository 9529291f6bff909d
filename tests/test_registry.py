import unittest

import httpx
from fakes import STDLIBS, FakeRepo, release

from nbpkg.client import NbpkgError, PackageNotFoundError, RegistryClient
from nbpkg.registry import ApiReleaseRepository, PackageRegistry, PackageRelease, parse_release_obj


def _client_with(handler, *, token: str | None = None) -> RegistryClient:
    client = RegistryClient(registry_url="https://registry.example.invalid", token=token)
    client._http = httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=True)  # type: ignore[attr-defined]
    return client


class TestParseRelease(unittest.TestCase):
    def test_parses_string_and_object_dependencies(self) -> None:
        rel = parse_release_obj(
            {
                "release": {
                    "version": " 1.2.0 ",
                    "dependencies": ["Beta@^1.0.0", {"name": "Gamma"}, {"bogus": True}, ""],
                    "download_url": "/files/alpha-1.2.0.zip",
                }
            },
            name="Alpha",
        )

        assert rel is not None
        self.assertEqual(rel.version, "1.2.0")
        self.assertEqual([(d.name, d.version_requirement) for d in rel.dependencies], [("Beta", "^1.0.0"), ("Gamma", None)])
        self.assertEqual(rel.download_url, "/files/alpha-1.2.0.zip")

    def test_rejects_entries_without_version(self) -> None:
        self.assertIsNone(parse_release_obj({"dependencies": []}, name="Alpha"))


class TestApiReleaseRepository(unittest.TestCase):
    def test_list_releases_follows_pages_and_sorts(self) -> None:
        seen: list[dict[str, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(dict(request.url.params))
            if request.url.params["page"] == "1":
                return httpx.Response(200, json={"has_more": True, "items": [{"version": "1.0.0"}]})
            return httpx.Response(200, json={"has_more": False, "items": [{"version": "1.10.0"}, {"version": "1.0.0"}]})

        client = _client_with(handler)
        try:
            releases = ApiReleaseRepository(client).list_releases("Alpha")
        finally:
            client.close()

        self.assertEqual([r.version for r in releases], ["1.10.0", "1.0.0"])
        self.assertEqual([p["page"] for p in seen], ["1", "2"])

    def test_unknown_package_raises_not_found(self) -> None:
        client = _client_with(lambda request: httpx.Response(404, text="nope"))
        try:
            with self.assertRaises(PackageNotFoundError):
                ApiReleaseRepository(client).list_releases("Nope")
        finally:
            client.close()

    def test_get_release_falls_back_to_listing(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/releases"):
                return httpx.Response(200, json={"items": [{"version": "2.0.0"}]})
            return httpx.Response(404, text="no single-version endpoint")

        client = _client_with(handler)
        try:
            repo = ApiReleaseRepository(client)
            found = repo.get_release("Alpha", "2.0.0")
            missing = repo.get_release("Alpha", "3.0.0")
        finally:
            client.close()

        assert found is not None
        self.assertEqual(found.version, "2.0.0")
        self.assertIsNone(missing)

    def test_download_sends_token_only_to_registry_origin(self) -> None:
        seen: list[tuple[str, str | None]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.url.host, request.headers.get("authorization")))
            return httpx.Response(200, content=b"zip-bytes")

        client = _client_with(handler, token="tok_123")
        try:
            repo = ApiReleaseRepository(client)
            repo.download_archive(PackageRelease(name="Alpha", version="1.0.0", download_url="/files/a.zip"))
            repo.download_archive(PackageRelease(name="Alpha", version="1.0.0", download_url="https://cdn.example.com/a.zip"))
        finally:
            client.close()

        self.assertEqual(seen[0], ("registry.example.invalid", "Bearer tok_123"))
        self.assertEqual(seen[1], ("cdn.example.com", None))

    def test_search_packages(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            self.assertEqual(request.url.params["prefix"], "Al")
            return httpx.Response(200, json={"success": True, "data": {"items": [{"name": "Alpha"}, "Altair", {"x": 1}]}})

        client = _client_with(handler)
        try:
            names = ApiReleaseRepository(client).search_packages("Al")
        finally:
            client.close()

        self.assertEqual(names, ["Alpha", "Altair"])


class TestPackageRegistry(unittest.TestCase):
    def setUp(self) -> None:
        self.repo = FakeRepo({"Alpha": [release("Alpha", "1.10.0"), release("Alpha", "1.2.0")], "jsonschema": []})
        self.registry = PackageRegistry(self.repo, stdlibs=STDLIBS)

    def test_package_versions(self) -> None:
        self.assertEqual(self.registry.package_versions("json"), ["stdlib"])
        self.assertEqual(self.registry.package_versions("Alpha"), ["1.2.0", "1.10.0"])
        self.assertEqual(self.registry.package_versions("Nope"), [])

    def test_package_exists(self) -> None:
        self.assertTrue(self.registry.package_exists("Alpha"))
        self.assertTrue(self.registry.package_exists("os"))
        self.assertFalse(self.registry.package_exists("Nope"))

    def test_offline_registry_degrades_to_latest(self) -> None:
        self.repo.offline = True
        with self.assertLogs("nbpkg.registry", level="ERROR"):
            self.assertEqual(self.registry.package_versions("Beta"), ["latest"])

    def test_completions_include_stdlib_and_registry(self) -> None:
        self.assertEqual(self.registry.package_completions("js"), ["json", "jsonschema"])

        self.repo.offline = True
        with self.assertLogs("nbpkg.registry", level="ERROR"):
            self.assertEqual(self.registry.package_completions("js"), ["json"])

    def test_refresh_drops_cached_versions(self) -> None:
        self.assertEqual(self.registry.package_versions("Alpha"), ["1.2.0", "1.10.0"])
        self.repo.offline = True
        self.assertEqual(self.registry.package_versions("Alpha"), ["1.2.0", "1.10.0"])

        self.registry.refresh_registry_cache()
        with self.assertLogs("nbpkg.registry", level="ERROR"):
            self.assertEqual(self.registry.package_versions("Alpha"), ["latest"])

    def test_default_stdlibs_come_from_the_interpreter(self) -> None:
        registry = PackageRegistry(self.repo)
        self.assertTrue(registry.is_stdlib("json"))
        self.assertFalse(registry.is_stdlib("Alpha"))


class TestRegistryClient(unittest.TestCase):
    def test_transport_errors_are_wrapped(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("boom", request=request)

        client = _client_with(handler)
        try:
            with self.assertRaises(NbpkgError):
                client.get_json("/v1/packages")
        finally:
            client.close()


if __name__ == "__main__":
    unittest.main()
