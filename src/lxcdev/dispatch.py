"""Environment dispatch: run here, or re-invoke lxcdev where the caller asked.

A request names a container, a user and a directory, each optional. When
this process already is that container and user, the command runs locally
after changing into the directory. Otherwise the command is wrapped so that
``lxcdev`` itself is re-entered in the right place:

1. Same host/container, other user: ``sudo -H -u USER env PROXY=... lxcdev ...``
2. Other container: ``lxc exec C --env LXCDEV_CONTAINER=C -- [sudo -H -u USER] lxcdev ...``

Inside a container lxcdev runs as a zip application pushed to a temporary
path, so standard input stays free for payloads such as a transfer stream.
"""

from __future__ import annotations

import os
import pwd
import shutil
import sys
import tempfile
import uuid
import zipapp
import zipfile
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path

from .errors import NestingError, UsageError
from .ops.lxc_ops import LxcClient
from .types import CONTAINER_ENV, DispatchDecision, ExecutionContext, RunContext

QUALIFIERS = ("--container", "--user", "--dir")

_PACKAGE_DIR = Path(__file__).resolve().parent


def current_user() -> str:
    return pwd.getpwuid(os.geteuid()).pw_name


def split_qualifiers(argv: Sequence[str]) -> tuple[ExecutionContext, list[str]]:
    """Pull ``--container/--user/--dir`` out of ``argv``.

    Both ``--opt=value`` and ``--opt value`` forms are accepted. Scanning
    stops at ``--`` so the qualifiers of a wrapped command are left alone.
    """
    values = {"--container": "", "--user": "", "--dir": ""}
    rest: list[str] = []
    args = list(argv)
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--":
            rest.extend(args[i:])
            break
        name, eq, value = arg.partition("=")
        if name in QUALIFIERS:
            if not eq:
                if i + 1 >= len(args):
                    raise UsageError(f"{name} requires a value")
                i += 1
                value = args[i]
            values[name] = value
        else:
            rest.append(arg)
        i += 1
    where = ExecutionContext(
        container=values["--container"],
        user=values["--user"],
        directory=values["--dir"],
    )
    return where, rest


def locate_program(package_dir: Path = _PACKAGE_DIR) -> tuple[Path | None, Path | None]:
    """Return ``(package_dir, archive)``; exactly one of them is set.

    Raises NestingError when lxcdev was not loaded from anything that can be
    shipped again (for instance code piped into ``python3 -``).
    """
    if sys.argv and sys.argv[0] in ("-", ""):
        raise NestingError("cannot nest: lxcdev is running from standard input")
    if package_dir.is_dir():
        return package_dir, None
    archive = package_dir.parent
    if archive.is_file() and zipfile.is_zipfile(archive):
        return None, archive
    raise NestingError(f"cannot nest: no lxcdev program found at {package_dir}")


def build_zipapp(dest: Path, package_dir: Path = _PACKAGE_DIR) -> Path:
    """Write lxcdev as a single executable zip application to ``dest``."""
    pkg, archive = locate_program(package_dir)
    if archive is not None:
        shutil.copyfile(archive, dest)
        return dest
    assert pkg is not None
    with tempfile.TemporaryDirectory(prefix="lxcdev-zipapp-") as tmp:
        shutil.copytree(pkg, Path(tmp) / "lxcdev", ignore=shutil.ignore_patterns("__pycache__", "*.pyc"))
        zipapp.create_archive(tmp, dest, interpreter="/usr/bin/env python3", main="lxcdev.remote:main")
    return dest


class Dispatcher:
    """Decide where a command runs and build the re-invocation if needed."""

    def __init__(
        self,
        ctx: RunContext,
        lxc: LxcClient | None = None,
        user: str | None = None,
        package_dir: Path = _PACKAGE_DIR,
    ):
        self.ctx = ctx
        self.lxc = lxc or LxcClient()
        self.user = user or current_user()
        self.package_dir = package_dir

    def is_satisfied(self, where: ExecutionContext) -> bool:
        return where.satisfied_by(self.ctx.current_container, self.user)

    def _crosses_container(self, where: ExecutionContext) -> bool:
        return bool(where.container) and where.container != self.ctx.current_container

    def decide(self, where: ExecutionContext, command: Sequence[str], remote_program: str = "") -> DispatchDecision:
        """Return the dispatch decision for running ``command`` in ``where``.

        ``command`` is an lxcdev agent command line (``git-import src``,
        ``exec -- make``). Decisions are pure: nothing is executed here.
        """
        _, cleaned = split_qualifiers(command)
        if self.is_satisfied(where):
            return DispatchDecision(local=True, argv=cleaned, directory=where.directory)

        inner_opts = where.as_options() + self._verbosity_options()
        if not self._crosses_container(where):
            program, env = self._local_program()
            if self.ctx.current_container:
                # sudo resets the environment; keep the container tag alive.
                env[CONTAINER_ENV] = self.ctx.current_container
            env.update(self.ctx.proxy_environment())
            argv = ["sudo", "-H", "-u", where.user, "env"]
            argv += [f"{k}={v}" for k, v in env.items()]
            argv += program + inner_opts + cleaned
            return DispatchDecision(local=False, argv=argv, directory=where.directory)

        remote_program = remote_program or self.remote_program_path()
        inner = [self.ctx.remote_python, remote_program] + inner_opts + cleaned
        if where.user and where.user != "root":
            inner = ["sudo", "-H", "-u", where.user, "env", f"{CONTAINER_ENV}={where.container}"] + inner
        env = {CONTAINER_ENV: where.container}
        env.update(self.ctx.proxy_environment())
        argv = self.lxc.exec_argv(where.container, inner, env=env)
        return DispatchDecision(local=False, argv=argv, directory=where.directory, ship_program=True)

    def _verbosity_options(self) -> list[str]:
        return {"quiet": ["-q"], "verbose": ["-v"]}.get(self.ctx.verbosity, [])

    def _local_program(self) -> tuple[list[str], dict[str, str]]:
        """Argv prefix re-entering lxcdev on this machine, plus env it needs."""
        pkg, archive = locate_program(self.package_dir)
        if archive is not None:
            return [sys.executable, str(archive)], {}
        assert pkg is not None
        # The other user does not share our sys.path tweaks (editable installs, tests).
        return [sys.executable, "-m", "lxcdev.remote"], {"PYTHONPATH": str(pkg.parent)}

    def remote_program_path(self) -> str:
        return f"{self.ctx.remote_tmp.rstrip('/')}/lxcdev-{uuid.uuid4().hex[:12]}.pyz"

    @contextmanager
    def prepare(self, where: ExecutionContext, command: Sequence[str]) -> Iterator[DispatchDecision]:
        """Decide, ship lxcdev into the container if needed, and clean up afterwards."""
        remote_program = self.remote_program_path()
        decision = self.decide(where, command, remote_program=remote_program)
        if not decision.ship_program:
            yield decision
            return

        with tempfile.TemporaryDirectory(prefix="lxcdev-") as tmp:
            local = build_zipapp(Path(tmp) / "lxcdev.pyz", self.package_dir)
            self.lxc.push_file(where.container, local, remote_program, mode="0644")
        try:
            yield decision
        finally:
            if not self.ctx.keep:
                self.lxc.remove_file(where.container, remote_program)

    def resolve_directory(self, directory: str, user: str | None = None) -> Path:
        """The directory a local command runs in: as given, else the user's home."""
        if directory:
            return Path(os.path.expanduser(directory))
        try:
            return Path(pwd.getpwnam(user or self.user).pw_dir)
        except KeyError:
            return Path.home()
