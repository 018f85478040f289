"""Unit tests for the click command line."""

import io
import json
import sys
import zipfile

import httpx
import pytest
from click.testing import CliRunner

import lxcdev.cli as cli_module
from conftest import git
from lxcdev import __version__
from lxcdev.cli import cli
from lxcdev.jenkins import JenkinsClient


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return CliRunner()


@pytest.fixture
def fake_lxc(tmp_path, monkeypatch):
    """An ``lxc`` that always fails with status 4."""
    script = tmp_path / "fake-lxc"
    script.write_text("#!/bin/sh\necho 'Error: Instance not found' >&2\nexit 4\n")
    script.chmod(0o755)
    monkeypatch.setenv("LXCDEV_LXC_BINARY", str(script))
    return script


def test_version(runner):
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_init_writes_loadable_config(runner, tmp_path):
    result = runner.invoke(cli, ["init", str(tmp_path)])

    assert result.exit_code == 0
    assert (tmp_path / ".lxcdev.yml").exists()

    result = runner.invoke(cli, ["-c", str(tmp_path / ".lxcdev.yml"), "telemetry", "tail"])
    assert "Telemetry file not found" in result.output


def test_init_keeps_existing_config(runner, tmp_path):
    (tmp_path / ".lxcdev.yml").write_text("verbosity: quiet\n")

    result = runner.invoke(cli, ["init", str(tmp_path)], input="n\n")

    assert result.exit_code == 0
    assert (tmp_path / ".lxcdev.yml").read_text() == "verbosity: quiet\n"


def test_export_then_import(runner, git_repo, tmp_path):
    exported = runner.invoke(cli, ["git-export", str(git_repo)])
    assert exported.exit_code == 0, exported.output

    dest = tmp_path / "dest"
    dest.mkdir()
    imported = runner.invoke(cli, ["git-import", "--dir", str(dest), "work"], input=exported.stdout_bytes)

    assert imported.exit_code == 0, imported.output
    assert (dest / "work" / "hello.txt").read_text() == "hello\n"
    assert git(dest / "work", "rev-parse", "--abbrev-ref", "HEAD").strip() == "main"


def test_git_push_locally(runner, git_repo, tmp_path):
    (git_repo / "hello.txt").write_text("edited\n")

    result = runner.invoke(
        cli,
        ["git-push", "--source", str(git_repo), "--dir", str(tmp_path), "--include-changes", "copy"],
    )

    assert result.exit_code == 0, result.output
    assert "Pushed main" in result.output
    assert (tmp_path / "copy" / "hello.txt").read_text() == "edited\n"


def test_import_garbage_exits_non_zero(runner, tmp_path):
    result = runner.invoke(cli, ["git-import", "--dir", str(tmp_path), "work"], input=b"garbage")

    assert result.exit_code == 1
    assert "lxcdev: error: extracting transfer stream failed" in result.output


def test_import_refuses_foreign_directory(runner, git_repo, tmp_path):
    (tmp_path / "work").mkdir()
    (tmp_path / "work" / "notes.txt").write_text("mine\n")
    exported = runner.invoke(cli, ["git-export", str(git_repo)])

    result = runner.invoke(cli, ["git-import", "--dir", str(tmp_path), "work"], input=exported.stdout_bytes)

    assert result.exit_code == 1
    assert "--force" in result.output


def test_export_outside_repository(runner, tmp_path):
    result = runner.invoke(cli, ["git-export", str(tmp_path)])

    assert result.exit_code == 128
    assert "not a git repository" in result.output


def test_exec_locally_propagates_status(runner, tmp_path):
    result = runner.invoke(
        cli, ["exec", "--dir", str(tmp_path), "--", sys.executable, "-c", "import sys; sys.exit(5)"]
    )
    assert result.exit_code == 5


def test_exec_runs_in_directory(runner, tmp_path):
    sub = tmp_path / "sub"
    sub.mkdir()
    result = runner.invoke(
        cli,
        ["exec", "--dir", str(sub), "--", sys.executable, "-c", "open('ran', 'w').close()"],
    )
    assert result.exit_code == 0
    assert (sub / "ran").exists()


def test_exec_missing_command(runner, tmp_path):
    result = runner.invoke(cli, ["exec", "--dir", str(tmp_path), "--", "lxcdev-no-such-tool"])
    assert result.exit_code == 127


def test_invalid_package_name_is_usage_error(runner):
    result = runner.invoke(cli, ["install-packages", "Bad Name"])
    assert result.exit_code == 2
    assert "invalid package name" in result.output


def test_delete_propagates_lxc_status(runner, fake_lxc):
    result = runner.invoke(cli, ["delete", "--container", "c1"])

    assert result.exit_code == 4
    assert "Instance not found" in result.output


def test_pull_reports_each_failure(runner, fake_lxc, tmp_path):
    result = runner.invoke(cli, ["pull", "--container", "c1", "/a", "/b", "--dest", str(tmp_path / "out")])

    assert result.exit_code == 4
    assert "pull /a" in result.output
    assert "pull /b" in result.output


def test_telemetry_tail(runner, tmp_path):
    log = tmp_path / ".lxcdev" / "telemetry.jsonl"
    log.parent.mkdir()
    log.write_text("".join(json.dumps({"type": f"e{i}"}) + "\n" for i in range(5)))

    result = runner.invoke(cli, ["telemetry", "tail", "-n", "2"])

    assert result.exit_code == 0
    assert result.output.splitlines() == ['{"type": "e3"}', '{"type": "e4"}']


def test_telemetry_tail_of_one_run(runner, tmp_path):
    log = tmp_path / ".lxcdev" / "telemetry.jsonl"
    log.parent.mkdir()
    log.write_text("".join(json.dumps({"run_id": r, "type": "step_failed"}) + "\n" for r in "abab"))

    result = runner.invoke(cli, ["telemetry", "tail", "--run", "b"])

    assert result.exit_code == 0
    assert [json.loads(ln)["run_id"] for ln in result.output.splitlines()] == ["b", "b"]


class TestJenkinsFetch:
    @pytest.fixture
    def mock_jenkins(self, monkeypatch):
        archive = io.BytesIO()
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("archive/pkg.deb", b"deb")

        def handler(request):
            path = request.url.path
            if path == "/job/pkg/lastBuild/api/json":
                return httpx.Response(
                    200,
                    json={
                        "number": 12,
                        "result": "FAILURE",
                        "building": False,
                        "url": "https://ci.example.org/job/pkg/12/",
                        "artifacts": [{"relativePath": "pkg.deb"}],
                    },
                )
            if path == "/job/pkg/12/consoleText":
                return httpx.Response(200, text="Finished: FAILURE\n")
            if path == "/job/pkg/12/artifact/*zip*/archive.zip":
                return httpx.Response(200, content=archive.getvalue())
            return httpx.Response(404)

        monkeypatch.setenv("LXCDEV_JENKINS_URL", "https://ci.example.org")
        monkeypatch.setattr(
            cli_module,
            "JenkinsClient",
            lambda config: JenkinsClient(config, transport=httpx.MockTransport(handler)),
        )

    def test_fetch(self, runner, mock_jenkins, tmp_path):
        result = runner.invoke(cli, ["jenkins", "fetch", "pkg", "--console", "--dest", str(tmp_path / "art")])

        assert result.exit_code == 0, result.output
        assert "pkg #12: FAILURE" in result.output
        assert "Finished: FAILURE" in result.output
        assert (tmp_path / "art" / "archive" / "pkg.deb").read_bytes() == b"deb"

    def test_require_success(self, runner, mock_jenkins):
        result = runner.invoke(cli, ["jenkins", "fetch", "pkg", "--require-success"])
        assert result.exit_code == 1

    def test_unknown_build(self, runner, mock_jenkins):
        result = runner.invoke(cli, ["jenkins", "fetch", "pkg", "--build", "99"])
        assert result.exit_code == 1
        assert "Jenkins has no build 99" in result.output

    def test_no_url(self, runner):
        result = runner.invoke(cli, ["jenkins", "fetch", "pkg"])
        assert result.exit_code == 2
        assert "no Jenkins URL configured" in result.output
