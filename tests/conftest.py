"""Global pytest configuration for hermetic test runs."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from lxcdev.types import RunContext


def git(repo: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=repo, check=True, capture_output=True, text=True
    ).stdout


@pytest.fixture(autouse=True)
def _clean_lxcdev_env(monkeypatch):
    # Never let the developer's environment steer dispatch or config.
    for name in (
        "LXCDEV_CONTAINER",
        "LXCDEV_IMAGE",
        "LXCDEV_KEEP",
        "LXCDEV_LXC_BINARY",
        "LXCDEV_BOOT_TIMEOUT",
        "LXCDEV_USER",
        "LXCDEV_JENKINS_URL",
        "LXCDEV_JENKINS_USER",
        "LXCDEV_JENKINS_TOKEN",
        "LXCDEV_TELEMETRY_PATH",
        "LXCDEV_TELEMETRY_DISABLED",
        "LXCDEV_VERBOSITY",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")


@pytest.fixture
def git_repo(tmp_path):
    """Create a temporary git repository on branch main with one commit."""
    repo_path = tmp_path / "repo"
    repo_path.mkdir()

    git(repo_path, "init", "-q")
    git(repo_path, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo_path, "config", "user.email", "test@example.com")
    git(repo_path, "config", "user.name", "Test User")
    git(repo_path, "config", "commit.gpgsign", "false")

    (repo_path / "hello.txt").write_text("hello\n")
    (repo_path / "lib").mkdir()
    (repo_path / "lib" / "util.py").write_text("def util():\n    return 1\n")

    git(repo_path, "add", ".")
    git(repo_path, "commit", "-q", "-m", "Initial commit")
    return repo_path


def completed(argv, returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(list(argv), returncode, stdout, stderr)


class RecordingRunner:
    """Stand-in for subprocess.run that records every argv it is given.

    ``handler(argv)`` may return a CompletedProcess to script a response;
    anything else means success with empty output.
    """

    def __init__(self, handler=None):
        self.calls = []
        self.kwargs = []
        self.handler = handler

    def __call__(self, argv, **kwargs):
        argv = list(argv)
        self.calls.append(argv)
        self.kwargs.append(kwargs)
        if self.handler is not None:
            result = self.handler(argv)
            if result is not None:
                return result
        return completed(argv)


@pytest.fixture
def no_proxy_env(monkeypatch):
    for name in RunContext().proxy_env:
        monkeypatch.delenv(name, raising=False)
