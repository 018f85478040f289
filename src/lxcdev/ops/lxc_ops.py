import subprocess
import uuid
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

from ..errors import ExternalToolError

Runner = Callable[..., subprocess.CompletedProcess]


class LxcClient:
    """
    Thin wrapper over the ``lxc`` command line client.

    Every call builds an argv list (no shell) and goes through ``runner``,
    which defaults to ``subprocess.run``; tests substitute a recorder.
    """

    def __init__(
        self,
        binary: str = "lxc",
        name_prefix: str = "lxcdev",
        runner: Runner | None = None,
    ):
        self.binary = binary
        self.name_prefix = name_prefix
        self.runner = runner or subprocess.run

    def _run(self, argv: list[str], check: bool = True, **kwargs: Any) -> subprocess.CompletedProcess:
        kwargs.setdefault("text", True)
        kwargs.setdefault("capture_output", True)
        p = self.runner(argv, **kwargs)
        if check and p.returncode != 0:
            raise ExternalToolError(argv, p.returncode, p.stderr or "")
        return p

    def new_name(self) -> str:
        return f"{self.name_prefix}-{uuid.uuid4().hex[:8]}"

    def launch(
        self,
        image: str,
        name: str | None = None,
        ephemeral: bool = False,
        config: Mapping[str, str] | None = None,
    ) -> str:
        name = name or self.new_name()
        argv = [self.binary, "launch", image, name]
        if ephemeral:
            argv.append("--ephemeral")
        for key, value in (config or {}).items():
            argv += ["--config", f"{key}={value}"]
        self._run(argv)
        return name

    def exec_argv(
        self,
        container: str,
        argv: Sequence[str],
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
    ) -> list[str]:
        """Build (but do not run) ``lxc exec`` for ``argv`` inside ``container``."""
        cmd = [self.binary, "exec", container]
        for k, v in (env or {}).items():
            cmd += ["--env", f"{k}={v}"]
        if cwd:
            cmd += ["--cwd", cwd]
        return cmd + ["--", *argv]

    def exec(
        self,
        container: str,
        argv: Sequence[str],
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        check: bool = True,
        capture: bool = True,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess:
        cmd = self.exec_argv(container, argv, env=env, cwd=cwd)
        if capture:
            return self._run(cmd, check=check, timeout=timeout)
        # Interactive/streaming commands keep the operator's terminal.
        return self._run(cmd, check=check, capture_output=False, timeout=timeout)

    def push_file(self, container: str, local: Path | str, remote_path: str, mode: str | None = None) -> None:
        argv = [self.binary, "file", "push"]
        if mode:
            argv += ["--mode", mode]
        argv += [str(local), f"{container}/{remote_path.lstrip('/')}"]
        self._run(argv)

    def pull_file(self, container: str, remote_path: str, dest: Path | str, recursive: bool = False) -> None:
        argv = [self.binary, "file", "pull"]
        if recursive:
            argv.append("--recursive")
        argv += [f"{container}/{remote_path.lstrip('/')}", str(dest)]
        self._run(argv)

    def delete(self, container: str, force: bool = True) -> None:
        argv = [self.binary, "delete", container]
        if force:
            argv.append("--force")
        self._run(argv)

    def remove_file(self, container: str, remote_path: str) -> None:
        """Best-effort removal of a file inside ``container``."""
        self._run(self.exec_argv(container, ["rm", "-f", remote_path]), check=False)