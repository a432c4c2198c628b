"""
github_registry.py
------------------
Artifact registry client for GitHub releases, over the REST API with httpx.
"""

from __future__ import annotations

import fnmatch
import logging
from pathlib import Path

import httpx
from box import Box

from common.errors import DependencyError, RegistryError
from connectors.registry_interface import ArtifactRegistry, ReleaseInfo

logger = logging.getLogger(__name__)


class GitHubSession:
    """
    Authenticated session against the GitHub REST API.

    Args:
        api_URL (str): Base URL of the API, e.g. "https://api.github.com".
        token (str | None): Personal access token. Anonymous when None.
    """

    def __init__(self, api_URL: str, token: str | None = None, transport: httpx.BaseTransport | None = None):
        self.base_URL = api_URL.rstrip("/")
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=self.base_URL,
            headers=headers,
            timeout=httpx.Timeout(30.0, read=300.0),
            follow_redirects=True,
            transport=transport,
        )

    def request(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        """
        Make an HTTP request to the API.
        raise_for_status() is called on the response.
        """
        response = self._client.request(method, endpoint, **kwargs)
        response.raise_for_status()
        return response

    def stream(self, method: str, url: str, **kwargs):
        return self._client.stream(method, url, **kwargs)

    def close(self):
        self._client.close()


class GitHubReleaseRegistry(ArtifactRegistry):
    """Releases of one repository ("owner/repo")."""

    def __init__(self, session: GitHubSession, repo: str):
        self.session = session
        self.repo = repo

    def list_releases(self, limit: int = 20) -> list[ReleaseInfo]:
        data = self._get_json(f"/repos/{self.repo}/releases", params={"per_page": limit})
        latest_tag = None
        releases = [_to_release(item) for item in data if not item.get("draft")]
        if releases:
            latest_tag = max(releases, key=lambda r: r.published_at or "").tag
        for release in releases:
            release.is_latest = release.tag == latest_tag
        return releases

    def latest_release(self) -> ReleaseInfo:
        release = _to_release(self._get_json(f"/repos/{self.repo}/releases/latest"))
        release.is_latest = True
        return release

    def get_release(self, tag: str) -> ReleaseInfo:
        return _to_release(self._get_json(f"/repos/{self.repo}/releases/tags/{tag}"))

    def download_asset(self, release: ReleaseInfo, pattern: str, dest_dir: Path) -> Path:
        matches = [a for a in release.assets if fnmatch.fnmatchcase(a.name, pattern)]
        if not matches:
            raise RegistryError(f"No asset matching {pattern!r} in release {release.tag}")
        asset = matches[0]
        target = Path(dest_dir) / asset.name
        partial = target.with_name(target.name + ".part")
        logger.info(f"Downloading {asset.url} -> {target}")
        try:
            with self.session.stream("GET", asset.url, headers={"Accept": "application/octet-stream"}) as response:
                response.raise_for_status()
                with open(partial, "wb") as fh:
                    for chunk in response.iter_bytes():
                        fh.write(chunk)
            partial.replace(target)
        except httpx.HTTPError as e:
            partial.unlink(missing_ok=True)
            raise RegistryError(f"Failed to download {asset.name}: {e}") from e
        return target

    def check_auth(self) -> None:
        try:
            self.session.request("GET", f"/repos/{self.repo}", timeout=10)
        except httpx.HTTPStatusError as e:
            raise DependencyError(
                f"GitHub rejected access to {self.repo} (HTTP {e.response.status_code}). Check GITHUB_TOKEN."
            ) from e
        except httpx.RequestError as e:
            raise DependencyError(f"Cannot reach GitHub API at {self.session.base_URL}: {e}") from e

    def _get_json(self, endpoint: str, **kwargs):
        try:
            return self.session.request("GET", endpoint, **kwargs).json()
        except httpx.HTTPStatusError as e:
            raise RegistryError(f"GitHub API {endpoint} returned HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise RegistryError(f"GitHub API request {endpoint} failed: {e}") from e


def _to_release(item: dict) -> ReleaseInfo:
    return ReleaseInfo(
        tag=item["tag_name"],
        name=item.get("name") or item["tag_name"],
        published_at=item.get("published_at"),
        is_latest=False,
        assets=[
            Box(name=a["name"], size=a.get("size", 0), url=a.get("url") or a.get("browser_download_url"))
            for a in item.get("assets", [])
        ],
    )
