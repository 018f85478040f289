"""Top-level container run: launch, provision, transfer, run, collect, delete.

The run is a fixed sequence:
1. Launch a container from an image
2. Wait for it to finish booting
3. Install packages and add the developer user (as root, through the agent)
4. Push the git working copy into the user's home
5. Run the command in the transferred tree
6. Pull each requested artifact out
7. Delete the container unless asked to keep it

Steps 1-4 are preconditions: their failure aborts the run. Steps 5 and 6 are
independent post-steps; each failure is recorded and the run carries on so
that every problem is reported at once.
"""

from __future__ import annotations

import subprocess
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .boot import wait_for_boot
from .config import LxcdevConfig
from .dispatch import Dispatcher
from .errors import ExternalToolError, LxcdevError
from .ops.lxc_ops import LxcClient
from .ops.telemetry import EventType, TelemetrySink
from .transfer import push_repository
from .types import ExecutionContext, RunContext, RunReport, StepFailure

Runner = Callable[..., subprocess.CompletedProcess]


@dataclass
class LaunchPlan:
    """Everything one ``lxcdev launch`` does, resolved from options and config."""

    image: str
    name: str | None = None
    ephemeral: bool = False
    packages: list[str] = field(default_factory=list)
    user: str = ""
    uid: int | None = None
    sudo: bool = True
    shell: str = "/bin/bash"
    git_source: Path | None = None
    git_target: str = "src"
    include_changes: bool = False
    command: list[str] = field(default_factory=list)
    pulls: list[str] = field(default_factory=list)
    dest: Path = Path(".")
    boot_timeout: int = 30
    bus_warning_after: int = 5
    network_host: str = "archive.ubuntu.com"

    @classmethod
    def from_config(cls, config: LxcdevConfig, image: str | None = None, **overrides) -> LaunchPlan:
        plan = cls(
            image=image or config.container.image,
            ephemeral=config.container.ephemeral,
            packages=list(config.provision.packages),
            user=config.provision.user,
            uid=config.provision.uid,
            sudo=config.provision.sudo,
            shell=config.provision.shell,
            git_target=config.git.target_dir,
            include_changes=config.git.include_changes,
            boot_timeout=config.boot.timeout_seconds,
            bus_warning_after=config.boot.bus_warning_after,
            network_host=config.boot.network_probe_host,
        )
        for key, value in overrides.items():
            if value is not None:
                setattr(plan, key, value)
        return plan

    @property
    def home(self) -> str:
        if not self.user or self.user == "root":
            return "/root"
        return f"/home/{self.user}"


class Orchestrator:
    """Drive one launch plan against ``lxc`` and record what happened."""

    def __init__(
        self,
        ctx: RunContext,
        lxc: LxcClient | None = None,
        telemetry: TelemetrySink | None = None,
        runner: Runner = subprocess.run,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ctx = ctx
        self.lxc = lxc or LxcClient()
        self.telemetry = telemetry or TelemetrySink(enabled=False, path=Path(".lxcdev/telemetry.jsonl"))
        self.runner = runner
        self.sleep = sleep
        self.dispatcher = Dispatcher(ctx, lxc=self.lxc)
        self.run_id = uuid.uuid4().hex[:12]

    def _log(self, event: EventType, **data) -> None:
        self.telemetry.log(self.run_id, event, data)

    def _agent(self, where: ExecutionContext, command: Sequence[str]) -> int:
        """Run an agent command in ``where`` and return its exit status."""
        with self.dispatcher.prepare(where, command) as decision:
            if decision.local:
                raise LxcdevError(f"refusing to run {command[0]} on the host")
            return self.runner(decision.argv).returncode

    def _agent_check(self, where: ExecutionContext, command: Sequence[str]) -> None:
        rc = self._agent(where, command)
        if rc != 0:
            raise ExternalToolError(list(command), rc)

    def provision(self, name: str, plan: LaunchPlan) -> None:
        as_root = ExecutionContext(container=name, user="root")
        if plan.packages:
            self._agent_check(as_root, ["install-packages", *plan.packages])
            self._log(EventType.PACKAGES_INSTALLED, container=name, packages=plan.packages)
        if plan.user and plan.user != "root":
            command = ["add-user", plan.user, "--shell", plan.shell]
            if plan.uid is not None:
                command += ["--uid", str(plan.uid)]
            if not plan.sudo:
                command.append("--no-sudo")
            self._agent_check(as_root, command)
            self._log(EventType.USER_ADDED, container=name, user=plan.user)

    def run(self, plan: LaunchPlan) -> RunReport:
        name = self.lxc.launch(plan.image, plan.name, ephemeral=plan.ephemeral)
        self.ctx.note(f"launched {name} from {plan.image}")
        self._log(EventType.CONTAINER_LAUNCHED, container=name, image=plan.image)

        report = RunReport(container=name, kept=self.ctx.keep, run_id=self.run_id)
        try:
            self._prepare(name, plan, report)
            self._post_steps(name, plan, report)
        finally:
            if self.ctx.keep:
                self.ctx.note(f"keeping {name}")
            else:
                self._delete(name, report)
            self._log(
                EventType.RUN_COMPLETED,
                container=name,
                completed=report.completed,
                failures=[f.step for f in report.failures],
            )
        return report

    def _prepare(self, name: str, plan: LaunchPlan, report: RunReport) -> None:
        def probe(argv: Sequence[str]) -> subprocess.CompletedProcess:
            return self.lxc.exec(name, argv, check=False)

        boot = wait_for_boot(
            probe,
            timeout=plan.boot_timeout,
            ctx=self.ctx,
            sleep=self.sleep,
            bus_warning_after=plan.bus_warning_after,
            network_host=plan.network_host,
        )
        self._log(
            EventType.BOOT_RESULT,
            container=name,
            state=boot.state.value,
            strategy=boot.strategy,
            attempts=boot.attempts,
        )
        if not boot.ok:
            raise ExternalToolError(
                ["wait-boot", name],
                1,
                message=f"{name} did not finish booting after {boot.attempts} polls ({boot.strategy})",
            )
        report.completed.append("boot")

        self.provision(name, plan)
        report.completed.append("provision")

        if plan.git_source is not None:
            where = ExecutionContext(container=name, user=plan.user)
            manifest = push_repository(
                plan.git_source,
                plan.git_target,
                where,
                self.dispatcher,
                include_changes=plan.include_changes,
            )
            self._log(EventType.TRANSFER, container=name, ref=manifest.ref, target=plan.git_target)
            report.completed.append("git")

    def _post_steps(self, name: str, plan: LaunchPlan, report: RunReport) -> None:
        if plan.command:
            directory = f"{plan.home}/{plan.git_target}" if plan.git_source is not None else ""
            where = ExecutionContext(container=name, user=plan.user, directory=directory)
            try:
                rc = self._agent(where, ["exec", "--", *plan.command])
            except (LxcdevError, OSError) as e:
                self._fail(report, "run", str(e), getattr(e, "exit_code", 1))
            else:
                self._log(EventType.COMMAND_EXECUTED, container=name, argv=plan.command, returncode=rc)
                if rc == 0:
                    report.completed.append("run")
                else:
                    self._fail(report, "run", f"command exited with status {rc}", rc)

        for path in plan.pulls:
            remote = path if path.startswith("/") else f"{plan.home}/{path}"
            try:
                plan.dest.mkdir(parents=True, exist_ok=True)
                self.lxc.pull_file(name, remote, plan.dest, recursive=True)
            except (ExternalToolError, OSError) as e:
                self._fail(report, f"pull {remote}", str(e), getattr(e, "exit_code", 1))
                continue
            self._log(EventType.ARTIFACT_PULLED, container=name, path=remote, dest=str(plan.dest))
            report.completed.append(f"pull {remote}")

    def _delete(self, name: str, report: RunReport) -> None:
        try:
            self.lxc.delete(name)
        except ExternalToolError as e:
            self._fail(report, "delete", str(e), e.exit_code)
            return
        self.ctx.note(f"deleted {name}", level="verbose")
        self._log(EventType.CONTAINER_DELETED, container=name)

    def _fail(self, report: RunReport, step: str, error: str, exit_code: int) -> None:
        self.ctx.warn(f"{step} failed: {error}")
        report.failures.append(StepFailure(step=step, error=error, exit_code=exit_code))
        self._log(EventType.STEP_FAILED, step=step, error=error, exit_code=exit_code)
