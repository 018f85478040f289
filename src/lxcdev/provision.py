"""Package installation and user creation on the machine lxcdev runs on."""

from __future__ import annotations

import os
import re
import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path

from .errors import ExternalToolError, UsageError
from .types import RunContext

Runner = Callable[..., subprocess.CompletedProcess]

SUDOERS_DIR = Path("/etc/sudoers.d")
_USER_NAME = re.compile(r"^[a-z_][a-z0-9_-]*[$]?$")
_PACKAGE_NAME = re.compile(r"^[a-z0-9][a-z0-9+.:~-]*$")


def _run(runner: Runner, argv: list[str], env: dict[str, str] | None = None) -> subprocess.CompletedProcess:
    merged_env = os.environ.copy()
    if env:
        merged_env.update(env)
    try:
        return runner(argv, text=True, capture_output=True, env=merged_env)
    except FileNotFoundError as e:
        raise ExternalToolError(argv, 127, str(e)) from e


def _check(runner: Runner, argv: list[str], env: dict[str, str] | None = None) -> subprocess.CompletedProcess:
    p = _run(runner, argv, env)
    if p.returncode != 0:
        raise ExternalToolError(argv, p.returncode, p.stderr or "")
    return p


def is_package_installed(name: str, runner: Runner = subprocess.run) -> bool:
    p = _run(runner, ["dpkg-query", "-W", "-f=${Status}", name])
    return p.returncode == 0 and p.stdout.strip() == "install ok installed"


def install_packages(
    names: Sequence[str],
    ctx: RunContext | None = None,
    runner: Runner = subprocess.run,
) -> list[str]:
    """Install the packages not installed yet; return the names installed."""
    ctx = ctx or RunContext()
    for name in names:
        if not _PACKAGE_NAME.match(name):
            raise UsageError(f"invalid package name: {name!r}")

    missing = [n for n in dict.fromkeys(names) if not is_package_installed(n, runner)]
    if not missing:
        ctx.note("all packages already installed", level="verbose")
        return []

    env = {"DEBIAN_FRONTEND": "noninteractive"}
    ctx.note(f"installing {' '.join(missing)}")
    _check(runner, ["apt-get", "update", "-q"], env)
    _check(runner, ["apt-get", "install", "-y", "-q", "--no-install-recommends", *missing], env)
    return missing


def user_exists(name: str, runner: Runner = subprocess.run) -> bool:
    return _run(runner, ["id", "-u", name]).returncode == 0


def add_user(
    name: str,
    uid: int | None = None,
    sudo: bool = True,
    shell: str = "/bin/bash",
    ctx: RunContext | None = None,
    runner: Runner = subprocess.run,
    sudoers_dir: Path = SUDOERS_DIR,
) -> bool:
    """Create ``name`` with a home directory; return False if it already existed."""
    ctx = ctx or RunContext()
    if not _USER_NAME.match(name) or len(name) > 32:
        raise UsageError(f"invalid user name: {name!r}")
    if user_exists(name, runner):
        ctx.note(f"user {name} already exists", level="verbose")
        return False

    argv = ["useradd", "--create-home", "--shell", shell]
    if uid is not None:
        argv += ["--uid", str(uid)]
    _check(runner, argv + [name])
    ctx.note(f"added user {name}")

    if sudo:
        sudoers_dir.mkdir(parents=True, exist_ok=True)
        entry = sudoers_dir / f"lxcdev-{name}"
        entry.write_text(f"{name} ALL=(ALL) NOPASSWD:ALL\n", encoding="utf-8")
        entry.chmod(0o440)
    return True
