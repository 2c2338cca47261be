"""GitHub REST implementation of the SourceProvider contract.

Endpoints used:
- GET /repos/{owner}/{repo}/git/trees/{ref}?recursive=1   (file listing)
- GET /repos/{owner}/{repo}/contents/{path}?ref={ref}     (raw content)
- GET /repos/{owner}/{repo}/commits/{ref}                 (commit sha)
"""

from __future__ import annotations

import logging
from types import TracebackType
from typing import Any
from urllib.parse import quote

import httpx

from autodeploy import __version__
from autodeploy.core.models import CommitId, FileEntry
from autodeploy.providers.base import FetchError, FetchErrorKind

logger = logging.getLogger(__name__)

# Error bodies are diagnostic only; keep log lines bounded
MAX_DETAIL_CHARS = 500

JSON_ACCEPT = "application/vnd.github.v3+json"
RAW_ACCEPT = "application/vnd.github.v3.raw"


def _classify_status(status_code: int) -> FetchErrorKind:
    """Map a non-2xx status to a FetchErrorKind."""
    if status_code == 404:
        return FetchErrorKind.NOT_FOUND
    if status_code in (401, 403):
        return FetchErrorKind.UNAUTHORIZED
    return FetchErrorKind.TRANSIENT


class GitHubSourceProvider:
    """Fetch trees, file contents and commit shas from the GitHub API."""

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str,
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.owner = owner
        self.repo = repo
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=api_url,
            timeout=httpx.Timeout(timeout),
        )
        self._headers = {
            "User-Agent": f"autodeploy/{__version__}",
            "Authorization": f"token {token}",
            "Accept": JSON_ACCEPT,
        }

    @property
    def repo_path(self) -> str:
        return f"/repos/{quote(self.owner, safe='')}/{quote(self.repo, safe='')}"

    async def __aenter__(self) -> GitHubSourceProvider:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def resolve_commit(self, ref: str) -> CommitId:
        data = await self._get_json(f"{self.repo_path}/commits/{quote(ref, safe='')}")
        sha = data.get("sha") if isinstance(data, dict) else None
        if not isinstance(sha, str) or not sha:
            raise FetchError(FetchErrorKind.TRANSIENT, f"Commit response for '{ref}' has no sha")
        return sha

    async def list_files(self, ref: str) -> list[FileEntry]:
        data = await self._get_json(
            f"{self.repo_path}/git/trees/{quote(ref, safe='')}",
            params={"recursive": "1"},
        )
        tree = data.get("tree") if isinstance(data, dict) else None
        if not isinstance(tree, list):
            raise FetchError(FetchErrorKind.TRANSIENT, f"Tree response for '{ref}' has no tree")
        if data.get("truncated"):
            logger.warning(f"Tree listing for '{ref}' was truncated by the API; files may be missing")

        blobs = [item["path"] for item in tree if item.get("type") == "blob" and item.get("path")]
        logger.info(f"Fetching {len(blobs)} files at {ref}")

        entries = []
        for path in blobs:
            logger.debug(f"Downloading {path}")
            content = await self._get_raw(path, ref)
            entries.append(FileEntry(path=path, kind="blob", content=content))
        return entries

    async def _get_raw(self, path: str, ref: str) -> bytes:
        response = await self._request(
            f"{self.repo_path}/contents/{quote(path)}",
            params={"ref": ref},
            accept=RAW_ACCEPT,
        )
        return response.content

    async def _get_json(self, url: str, params: dict[str, str] | None = None) -> Any:
        response = await self._request(url, params=params)
        try:
            return response.json()
        except ValueError as e:
            raise FetchError(FetchErrorKind.TRANSIENT, f"Invalid JSON from {url}: {e}") from e

    async def _request(
        self,
        url: str,
        params: dict[str, str] | None = None,
        accept: str = JSON_ACCEPT,
    ) -> httpx.Response:
        headers = {**self._headers, "Accept": accept}
        try:
            response = await self.client.get(url, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise FetchError(FetchErrorKind.TRANSIENT, f"GET {url} failed: {e}") from e

        if not response.is_success:
            detail = response.text[:MAX_DETAIL_CHARS]
            raise FetchError(
                _classify_status(response.status_code),
                f"GET {url} returned HTTP {response.status_code}: {detail}",
                status_code=response.status_code,
                detail=detail,
            )
        return response
