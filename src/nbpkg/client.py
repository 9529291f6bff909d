from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from .config import DEFAULT_REGISTRY_URL, DEFAULT_TIMEOUT_S


class NbpkgError(RuntimeError):
    pass


class PackageNotFoundError(NbpkgError):
    pass


@dataclass(frozen=True)
class NbpkgHTTPError(NbpkgError):
    status_code: int
    body: str

    def __str__(self) -> str:  # pragma: no cover
        return f"HTTP {self.status_code}: {self.body}"


class RegistryClient:
    """
    Thin HTTP client for a package registry. Relative paths are joined onto `registry_url`;
    absolute URLs (e.g. download links) are requested as-is.
    """

    def __init__(
        self,
        *,
        registry_url: str = DEFAULT_REGISTRY_URL,
        token: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        default_headers: dict[str, str] | None = None,
    ) -> None:
        self.registry_url = registry_url.rstrip("/")
        self.token = token
        self.timeout_s = timeout_s
        self._default_headers = dict(default_headers or {})
        self._http = httpx.Client(timeout=timeout_s, follow_redirects=True)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "RegistryClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def request(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        auth: bool = True,
    ) -> httpx.Response:
        if path.startswith(("http://", "https://")):
            url = path
        else:
            if not path.startswith("/"):
                path = "/" + path
            url = f"{self.registry_url}{path}"

        req_headers = dict(self._default_headers)
        if headers:
            req_headers.update(headers)
        if auth and self.token:
            req_headers["Authorization"] = f"Bearer {self.token}"

        try:
            resp = self._http.request(method.upper(), url, params=params, headers=req_headers)
        except httpx.HTTPError as e:
            raise NbpkgError(f"Request failed: {e}") from e

        if resp.status_code >= 400:
            raise NbpkgHTTPError(resp.status_code, resp.text)
        return resp

    def get_json(self, path: str, *, params: dict[str, Any] | None = None, auth: bool = True) -> Any:
        resp = self.request(method="GET", path=path, params=params, auth=auth)
        try:
            return resp.json()
        except ValueError as e:
            raise NbpkgError(f"Registry returned invalid JSON for {path}") from e
