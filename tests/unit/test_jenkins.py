"""Unit tests for jenkins.py using httpx.MockTransport."""

import base64
import io
import zipfile

import httpx
import pytest

from lxcdev.config import JenkinsConfig
from lxcdev.errors import ExternalToolError, UsageError
from lxcdev.jenkins import JenkinsClient, extract_archive, job_path

BASE = "https://ci.example.org"


def _zip(files):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    return buf.getvalue()


def _build(number=7, result="SUCCESS", building=False, artifacts=True):
    return {
        "number": number,
        "result": result,
        "building": building,
        "url": f"{BASE}/job/team/job/pkg/{number}/",
        "artifacts": [{"relativePath": "out/pkg.deb"}] if artifacts else [],
    }


class FakeJenkins:
    def __init__(self):
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/job/team/job/pkg/api/json":
            return httpx.Response(200, json={"name": "pkg", "buildable": True})
        if path == "/job/team/job/pkg/lastBuild/api/json":
            return httpx.Response(200, json=_build())
        if path == "/job/team/job/pkg/3/api/json":
            return httpx.Response(200, json=_build(3, result=None, building=True))
        if path == "/job/team/job/pkg/7/consoleText":
            return httpx.Response(200, text="Started by user\nFinished: SUCCESS\n")
        if path == "/job/team/job/pkg/7/artifact/*zip*/archive.zip":
            return httpx.Response(200, content=_zip({"archive/out/pkg.deb": b"deb"}))
        if path == "/job/secret/api/json":
            return httpx.Response(403)
        return httpx.Response(404)


@pytest.fixture
def jenkins():
    fake = FakeJenkins()
    config = JenkinsConfig(url=BASE, user="me", token="t0ken")
    with JenkinsClient(config, transport=httpx.MockTransport(fake)) as client:
        yield client, fake


def test_job_path():
    assert job_path("team/pkg") == "job/team/job/pkg"
    assert job_path("/my job/") == "job/my%20job"
    with pytest.raises(UsageError):
        job_path("//")


def test_requires_url():
    with pytest.raises(UsageError, match="Jenkins URL"):
        JenkinsClient(JenkinsConfig())


def test_get_job_uses_basic_auth(jenkins):
    client, fake = jenkins

    assert client.get_job("team/pkg")["name"] == "pkg"

    expected = "Basic " + base64.b64encode(b"me:t0ken").decode()
    assert fake.requests[0].headers["Authorization"] == expected


def test_last_build_and_status(jenkins):
    client, _ = jenkins

    build = client.get_build("team/pkg")

    assert build["number"] == 7
    assert client.build_status(build) == "SUCCESS"


def test_running_build(jenkins):
    client, _ = jenkins
    assert client.build_status(client.get_build("team/pkg", 3)) == "BUILDING"


def test_console_text(jenkins):
    client, _ = jenkins
    assert client.console_text("team/pkg", 7).endswith("Finished: SUCCESS\n")


def test_missing_build(jenkins):
    client, _ = jenkins
    with pytest.raises(ExternalToolError, match="Jenkins has no build 99"):
        client.get_build("team/pkg", 99)


def test_http_error_status(jenkins):
    client, _ = jenkins
    with pytest.raises(ExternalToolError, match="HTTP 403"):
        client.get_job("secret")


def test_transport_error():
    def boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = JenkinsClient(JenkinsConfig(url=BASE), transport=httpx.MockTransport(boom))
    with pytest.raises(ExternalToolError, match="connection refused"):
        client.get_job("team/pkg")


def test_fetch_artifacts(jenkins, tmp_path):
    client, _ = jenkins

    names = client.fetch_artifacts(client.get_build("team/pkg"), tmp_path)

    assert names == ["archive/out/pkg.deb"]
    assert (tmp_path / "archive" / "out" / "pkg.deb").read_bytes() == b"deb"


def test_fetch_without_artifacts(jenkins, tmp_path):
    client, fake = jenkins

    assert client.fetch_artifacts(_build(artifacts=False), tmp_path) == []
    assert fake.requests == []


def test_extract_refuses_escaping_paths(tmp_path):
    with pytest.raises(ExternalToolError, match="unsafe path"):
        extract_archive(_zip({"../evil": b"x"}), tmp_path / "dest")
    assert not (tmp_path / "evil").exists()


def test_extract_corrupt_archive(tmp_path):
    with pytest.raises(ExternalToolError, match="corrupt"):
        extract_archive(b"not a zip", tmp_path)
