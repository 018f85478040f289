"""Error taxonomy shared by the host CLI and the in-container agent."""

from __future__ import annotations

import shlex
from collections.abc import Sequence


class LxcdevError(RuntimeError):
    """Base class; ``exit_code`` is what the process should exit with."""

    exit_code = 1


class UsageError(LxcdevError):
    """Malformed arguments, detected before anything external runs."""

    exit_code = 2


class PreconditionError(LxcdevError):
    """A precondition of a destructive or nested operation does not hold."""


class NestingError(PreconditionError):
    """Self re-invocation requested but there is no program to ship."""


class ExternalToolError(LxcdevError):
    """A collaborator (lxc, git, quilt, ...) failed."""

    def __init__(
        self,
        argv: Sequence[str],
        returncode: int,
        stderr: str = "",
        message: str | None = None,
    ):
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        if message is None:
            message = f"command failed ({returncode}): {shlex.join(self.argv)}"
            if stderr.strip():
                message += f"\n{stderr.strip()}"
        super().__init__(message)

    @property
    def exit_code(self) -> int:  # type: ignore[override]
        # Propagate the collaborator's status; signals and 0 map to a plain failure.
        return self.returncode if self.returncode > 0 else 1


class TransferError(ExternalToolError, OSError):
    """Packaging or unpackaging a transfer stream failed."""

    def __init__(
        self,
        message: str,
        argv: Sequence[str] = (),
        returncode: int = 1,
        stderr: str = "",
    ):
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        ExternalToolError.__init__(self, argv, returncode, stderr, message=message)
