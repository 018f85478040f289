"""Jenkins REST client for looking up builds and fetching their artifacts."""

from __future__ import annotations

import io
import zipfile
from pathlib import Path
from typing import Any
from urllib.parse import quote

import httpx

from .config import JenkinsConfig
from .errors import ExternalToolError, UsageError


def job_path(name: str) -> str:
    """Map ``folder/sub/job`` to ``job/folder/job/sub/job/job``."""
    parts = [p for p in name.strip("/").split("/") if p]
    if not parts:
        raise UsageError("empty Jenkins job name")
    return "/".join(f"job/{quote(p, safe='')}" for p in parts)


class JenkinsClient:
    """
    Synchronous HTTP client for the Jenkins JSON API.

    Authentication is HTTP basic with a user name and API token. Errors are
    reported as ExternalToolError carrying the HTTP status; nothing is
    retried.
    """

    def __init__(self, config: JenkinsConfig, transport: httpx.BaseTransport | None = None):
        if not config.url:
            raise UsageError("no Jenkins URL configured (jenkins.url or LXCDEV_JENKINS_URL)")
        self.config = config
        auth = (config.user, config.token or "") if config.user else None
        self.client = httpx.Client(
            base_url=config.url,
            auth=auth,
            timeout=config.timeout_seconds,
            verify=config.verify_tls,
            follow_redirects=True,
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> JenkinsClient:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _get(self, path: str, what: str, **params: Any) -> httpx.Response:
        try:
            response = self.client.get(path, params=params or None)
        except httpx.HTTPError as e:
            raise ExternalToolError(["GET", path], 1, message=f"Jenkins request for {what} failed: {e}") from e
        if response.status_code == 404:
            raise ExternalToolError(["GET", path], 1, message=f"Jenkins has no {what}")
        if response.status_code >= 400:
            raise ExternalToolError(
                ["GET", path],
                1,
                message=f"Jenkins returned HTTP {response.status_code} for {what}",
            )
        return response

    def get_job(self, name: str) -> dict[str, Any]:
        return self._get(f"/{job_path(name)}/api/json", f"job {name!r}").json()

    def get_build(self, name: str, number: int | None = None) -> dict[str, Any]:
        """Return build metadata; the latest build when ``number`` is None."""
        selector = str(number) if number is not None else "lastBuild"
        return self._get(
            f"/{job_path(name)}/{selector}/api/json",
            f"build {selector} of job {name!r}",
        ).json()

    def console_text(self, name: str, number: int) -> str:
        return self._get(
            f"/{job_path(name)}/{number}/consoleText",
            f"console output of {name!r} #{number}",
        ).text

    @staticmethod
    def build_status(build: dict[str, Any]) -> str:
        """``SUCCESS``, ``FAILURE``, ``UNSTABLE``, ``ABORTED``... or ``BUILDING``."""
        if build.get("building"):
            return "BUILDING"
        return build.get("result") or "UNKNOWN"

    def fetch_artifacts(self, build: dict[str, Any], dest: Path | str) -> list[str]:
        """Download the build's artifact archive and extract it below ``dest``."""
        if not build.get("artifacts"):
            return []
        url = build["url"].rstrip("/") + "/artifact/*zip*/archive.zip"
        response = self._get(url, f"artifacts of build {build.get('number')}")
        return extract_archive(response.content, Path(dest))


def extract_archive(data: bytes, dest: Path) -> list[str]:
    """Extract a zip archive, refusing members that would land outside ``dest``."""
    dest.mkdir(parents=True, exist_ok=True)
    root = dest.resolve()
    names: list[str] = []
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            for member in zf.infolist():
                target = (root / member.filename).resolve()
                if not target.is_relative_to(root):
                    raise ExternalToolError([], 1, message=f"unsafe path in artifact archive: {member.filename}")
                zf.extract(member, root)
                if not member.is_dir():
                    names.append(member.filename)
    except zipfile.BadZipFile as e:
        raise ExternalToolError([], 1, message=f"artifact archive is corrupt: {e}") from e
    return names
