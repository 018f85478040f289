"""Core data types for lxcdev.

Only the standard library is used here: these types travel into containers
that provide nothing but a bare ``python3``.
"""

from __future__ import annotations

import enum
import os
import sys
from dataclasses import dataclass, field
from typing import Any

# Set on every invocation re-entered inside a container.
CONTAINER_ENV = "LXCDEV_CONTAINER"

VERBOSITY_LEVELS = ("quiet", "normal", "verbose")


class DiffMode(str, enum.Enum):
    """What the unpacking side should do with captured local edits."""

    APPLY = "apply"
    INFORMATIONAL = "informational"


class BootState(str, enum.Enum):
    WAITING = "waiting"
    DONE = "done"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class ExecutionContext:
    """Where an operation should run.

    An empty field means "wherever/whoever we already are" and matches any
    current value.
    """

    container: str = ""
    user: str = ""
    directory: str = ""

    def satisfied_by(self, current_container: str, current_user: str) -> bool:
        """True if a process in (current_container, current_user) may run locally.

        The directory never takes part in the check.
        """
        if self.container and self.container != current_container:
            return False
        if self.user and self.user != current_user:
            return False
        return True

    def as_options(self) -> list[str]:
        """Render back into the ``--container/--user/--dir`` qualifiers."""
        opts: list[str] = []
        if self.container:
            opts.append(f"--container={self.container}")
        if self.user:
            opts.append(f"--user={self.user}")
        if self.directory:
            opts.append(f"--dir={self.directory}")
        return opts


@dataclass(frozen=True)
class RunContext:
    """Settings threaded explicitly through every operation."""

    verbosity: str = "normal"
    keep: bool = False
    current_container: str = ""
    remote_python: str = "python3"
    remote_tmp: str = "/tmp"
    proxy_env: tuple[str, ...] = (
        "http_proxy",
        "https_proxy",
        "ftp_proxy",
        "no_proxy",
        "HTTP_PROXY",
        "HTTPS_PROXY",
        "FTP_PROXY",
        "NO_PROXY",
    )

    def __post_init__(self) -> None:
        if self.verbosity not in VERBOSITY_LEVELS:
            raise ValueError(
                f"Invalid verbosity: {self.verbosity}. Must be one of {VERBOSITY_LEVELS}"
            )

    @classmethod
    def from_environ(cls, **overrides: Any) -> RunContext:
        """Build a context whose current container comes from the environment."""
        overrides.setdefault("current_container", os.environ.get(CONTAINER_ENV, ""))
        return cls(**overrides)

    def note(self, message: str, level: str = "normal") -> None:
        """Print an operator message to stderr, honouring verbosity.

        ``level`` is the least verbosity at which the message shows; warnings
        use "quiet" so they are always printed.
        """
        if VERBOSITY_LEVELS.index(self.verbosity) >= VERBOSITY_LEVELS.index(level):
            print(f"lxcdev: {message}", file=sys.stderr, flush=True)

    def warn(self, message: str) -> None:
        self.note(f"warning: {message}", level="quiet")

    def proxy_environment(self) -> dict[str, str]:
        """Proxy variables present in this process's environment."""
        return {k: os.environ[k] for k in self.proxy_env if os.environ.get(k)}


@dataclass
class TransferManifest:
    """Typed description of a transfer stream's contents."""

    ref: str
    detached: bool = False
    diff_mode: DiffMode | None = None
    diff_name: str | None = None
    format: int = 1

    def to_dict(self) -> dict[str, Any]:
        diff = None
        if self.diff_mode is not None:
            diff = {"mode": self.diff_mode.value, "name": self.diff_name}
        return {"format": self.format, "ref": self.ref, "detached": self.detached, "diff": diff}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransferManifest:
        diff = data.get("diff") or None
        return cls(
            ref=str(data["ref"]),
            detached=bool(data.get("detached", False)),
            diff_mode=DiffMode(diff["mode"]) if diff else None,
            diff_name=diff.get("name") if diff else None,
            format=int(data.get("format", 1)),
        )


@dataclass
class DispatchDecision:
    """Outcome of environment dispatch.

    ``local`` decisions carry the cleaned command and the directory to change
    into; remote ones carry the full wrapped argv to execute instead.
    """

    local: bool
    argv: list[str]
    directory: str = ""
    # lxcdev has to be pushed into the container before ``argv`` runs.
    ship_program: bool = False


@dataclass
class BootResult:
    state: BootState
    strategy: str
    attempts: int
    last_output: str = ""

    @property
    def ok(self) -> bool:
        return self.state is BootState.DONE


@dataclass
class StepFailure:
    """One failed post-step of an orchestration run."""

    step: str
    error: str
    exit_code: int = 1


@dataclass
class RunReport:
    """Outcome of a top-level orchestration run."""

    container: str
    completed: list[str] = field(default_factory=list)
    failures: list[StepFailure] = field(default_factory=list)
    kept: bool = False
    run_id: str = ""

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def exit_code(self) -> int:
        return self.failures[0].exit_code if self.failures else 0
