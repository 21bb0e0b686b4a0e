"""GitHub release source: latest-version discovery and asset download."""

from __future__ import annotations

import json
import logging
import os
import re
from contextlib import suppress
from datetime import datetime
from pathlib import Path
from threading import RLock
from typing import Any, Protocol

import httpx

LOGGER = logging.getLogger("canary_releaser.release_source")

LATEST_TAG = "latest"


class AssetsNotFoundError(LookupError):
    """No release asset matches the configured package name pattern."""


class AssetsCannotDownloadError(RuntimeError):
    """The release API or the asset download failed."""


class ReleaseSource(Protocol):
    def fetch_latest(self, include_prerelease: bool) -> str: ...

    def download_asset(self, tag: str) -> tuple[str, str]: ...


def _published_at(release: dict[str, Any]) -> datetime:
    raw = release.get("published_at") or release.get("created_at")
    if not raw:
        return datetime.min
    return datetime.fromisoformat(str(raw)).replace(tzinfo=None)


class GitHubReleaseSource:
    def __init__(
        self,
        repo: str,
        package_name_pattern: str,
        save_assets_path: str,
        api_url: str = "https://api.github.com",
        token: str | None = None,
        timeout_s: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        owner_repo = repo.split("/")
        if len(owner_repo) != 2 or not all(owner_repo):
            raise ValueError(f"invalid repo: {repo}")
        self.owner, self.repo = owner_repo
        self._pattern = re.compile(package_name_pattern)
        self._save_path = Path(save_assets_path)
        self._lock = RLock()
        self._last_tag = ""
        self._last_asset_file = ""

        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        resolved_token = token or os.getenv("GITHUB_TOKEN", "")
        if resolved_token:
            headers["Authorization"] = f"Bearer {resolved_token}"
        self._client = httpx.Client(
            base_url=api_url.rstrip("/"),
            headers=headers,
            timeout=timeout_s,
            follow_redirects=True,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def fetch_latest(self, include_prerelease: bool) -> str:
        release = self._latest_release(include_prerelease)
        return str(release["tag_name"])

    def download_asset(self, tag: str) -> tuple[str, str]:
        with self._lock:
            if tag and tag == self._last_tag and self._last_asset_file:
                return tag, self._last_asset_file

            release = self._release_by_tag(tag)
            release_tag = str(release["tag_name"])
            for asset in release.get("assets") or []:
                name = str(asset.get("name", ""))
                LOGGER.debug(
                    "asset_info %s",
                    json.dumps({"tag": release_tag, "name": name}, sort_keys=True),
                )
                if not self._pattern.search(name):
                    continue
                file_path = self._save_path / name
                if not file_path.exists():
                    self._download(int(asset["id"]), file_path)
                self._last_tag = release_tag
                self._last_asset_file = str(file_path)
                return release_tag, str(file_path)
        raise AssetsNotFoundError(f"no asset of {release_tag} matches {self._pattern.pattern}")

    def _latest_release(self, include_prerelease: bool) -> dict[str, Any]:
        latest: dict[str, Any] | None = None
        try:
            latest = self._get_json(f"/repos/{self.owner}/{self.repo}/releases/latest")
        except AssetsCannotDownloadError:
            if not include_prerelease:
                raise

        if include_prerelease:
            prerelease = self._latest_prerelease()
            if prerelease is not None and (
                latest is None or _published_at(prerelease) > _published_at(latest)
            ):
                return prerelease

        if latest is None:
            raise AssetsNotFoundError(f"no release found for {self.owner}/{self.repo}")
        return latest

    def _latest_prerelease(self) -> dict[str, Any] | None:
        releases: list[dict[str, Any]] = []
        url: str | None = f"/repos/{self.owner}/{self.repo}/releases"
        params: dict[str, Any] | None = {"per_page": 100}
        while url is not None:
            response = self._request(url, params=params)
            page = response.json()
            if isinstance(page, list):
                releases.extend(item for item in page if isinstance(item, dict))
            url = response.links.get("next", {}).get("url")
            params = None

        releases.sort(key=_published_at, reverse=True)
        for release in releases:
            if release.get("draft"):
                continue
            if release.get("prerelease"):
                return release
        return None

    def _release_by_tag(self, tag: str) -> dict[str, Any]:
        if tag == LATEST_TAG:
            return self._latest_release(include_prerelease=False)
        return self._get_json(f"/repos/{self.owner}/{self.repo}/releases/tags/{tag}")

    def _get_json(self, url: str) -> dict[str, Any]:
        payload = self._request(url).json()
        if not isinstance(payload, dict):
            raise AssetsCannotDownloadError(f"unexpected response from {url}")
        return payload

    def _request(self, url: str, params: dict[str, Any] | None = None) -> httpx.Response:
        try:
            response = self._client.get(url, params=params)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise AssetsCannotDownloadError(f"GET {url} failed: {exc}") from exc
        return response

    def _download(self, asset_id: int, file_path: Path) -> None:
        url = f"/repos/{self.owner}/{self.repo}/releases/assets/{asset_id}"
        tmp_path = file_path.with_name(file_path.name + ".part")
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with self._client.stream(
                "GET", url, headers={"Accept": "application/octet-stream"}
            ) as response:
                response.raise_for_status()
                with tmp_path.open("wb") as handle:
                    for chunk in response.iter_bytes():
                        handle.write(chunk)
            tmp_path.replace(file_path)
        except (httpx.HTTPError, OSError) as exc:
            with suppress(OSError):
                tmp_path.unlink(missing_ok=True)
            raise AssetsCannotDownloadError(f"download of asset {asset_id} failed: {exc}") from exc
        LOGGER.info(
            "asset_downloaded %s",
            json.dumps({"asset_id": asset_id, "path": str(file_path)}, sort_keys=True),
        )
