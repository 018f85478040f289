"""Command-line interface for lxcdev.

Commands:
- lxcdev launch IMAGE [-- CMD...]: Launch, provision, transfer, run, collect, delete
- lxcdev wait-boot: Wait for a container to finish booting
- lxcdev exec -- CMD...: Run a command in a (container, user, directory) context
- lxcdev install-packages / add-user: Provision a context
- lxcdev git-export / git-import / git-push / git-clone: Move git state around
- lxcdev pull / delete: Copy files out of and remove containers
- lxcdev patch cherry-pick: Turn an upstream commit into a quilt patch
- lxcdev jenkins fetch: Inspect a Jenkins build and download its artifacts
- lxcdev telemetry tail: Show recent events
- lxcdev init: Write a default .lxcdev.yml
"""

from __future__ import annotations

import subprocess
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from . import __version__
from .boot import local_probe, wait_for_boot
from .config import CONFIG_FILENAME, LxcdevConfig, load_config
from .dispatch import Dispatcher
from .errors import ExternalToolError, LxcdevError, UsageError
from .jenkins import JenkinsClient
from .ops.git_ops import git_clone
from .ops.lxc_ops import LxcClient
from .ops.telemetry import TelemetrySink, prune_telemetry_file
from .orchestrate import LaunchPlan, Orchestrator
from .patches import cherry_pick
from .provision import add_user, install_packages
from .transfer import export_repository, import_repository, push_repository
from .types import ExecutionContext, RunContext, RunReport, StepFailure


@dataclass
class CliState:
    """Per-invocation settings shared by every command."""

    config: LxcdevConfig
    verbosity: str | None = None

    def run_context(self, **overrides: Any) -> RunContext:
        if self.verbosity:
            overrides.setdefault("verbosity", self.verbosity)
        return self.config.to_run_context(**overrides)

    def lxc(self) -> LxcClient:
        return LxcClient(binary=self.config.container.lxc_binary, name_prefix=self.config.container.name_prefix)

    def telemetry(self) -> TelemetrySink:
        return TelemetrySink(enabled=self.config.telemetry.enabled, path=Path(self.config.telemetry.log_path))


class LxcdevGroup(click.Group):
    """Turn lxcdev errors into a message on stderr and the right exit status."""

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except UsageError as e:
            raise click.UsageError(str(e), ctx=ctx) from e
        except LxcdevError as e:
            click.echo(f"lxcdev: error: {e}", err=True)
            sys.exit(e.exit_code)


def context_options(f: Callable) -> Callable:
    """Add the ``--container/--user/--dir`` qualifiers to a command."""
    f = click.option("--dir", "directory", default="", help="Directory to run in (default: the user's home).")(f)
    f = click.option("--user", default="", help="User to run as (default: current user).")(f)
    f = click.option("--container", default="", help="Container to run in (default: here).")(f)
    return f


def _dispatch(
    state: CliState,
    where: ExecutionContext,
    command: Sequence[str],
    local: Callable[[RunContext, Path], int],
) -> None:
    """Run ``local`` here if ``where`` is satisfied, else re-invoke lxcdev there."""
    run_ctx = state.run_context()
    dispatcher = Dispatcher(run_ctx, lxc=state.lxc())
    with dispatcher.prepare(where, command) as decision:
        if decision.local:
            rc = local(run_ctx, dispatcher.resolve_directory(decision.directory))
        else:
            rc = subprocess.run(decision.argv).returncode
    if rc:
        sys.exit(rc)


@click.group(cls=LxcdevGroup)
@click.version_option(version=__version__, prog_name="lxcdev")
@click.option("--config", "-c", type=click.Path(exists=True, dir_okay=False), help="Config file path")
@click.option("--verbose", "-v", "verbosity", flag_value="verbose", help="Report every step.")
@click.option("--quiet", "-q", "verbosity", flag_value="quiet", help="Only report warnings and errors.")
@click.pass_context
def cli(ctx: click.Context, config: str | None, verbosity: str | None) -> None:
    """lxcdev - developer workflows over lxc containers, git, quilt and Jenkins."""
    if config:
        lxcdev_config = LxcdevConfig.load_from_file(config)
        lxcdev_config.apply_env_overrides()
    else:
        lxcdev_config = load_config(Path.cwd())
    ctx.obj = CliState(config=lxcdev_config, verbosity=verbosity)


@cli.command(context_settings={"ignore_unknown_options": True})
@click.argument("image")
@click.argument("cmd", nargs=-1, type=click.UNPROCESSED)
@click.option("--name", help="Container name (default: generated).")
@click.option("--keep", is_flag=True, help="Do not delete the container at the end.")
@click.option("--ephemeral", is_flag=True, help="Launch an ephemeral container.")
@click.option("--package", "-p", "packages", multiple=True, help="Package to install (repeatable).")
@click.option("--user", help="User to create and run as.")
@click.option("--uid", type=int, help="UID for the created user.")
@click.option("--git", "git_source", type=click.Path(exists=True, file_okay=False), help="Working copy to transfer.")
@click.option("--include-changes", is_flag=True, help="Apply uncommitted changes in the container.")
@click.option("--target", help="Directory below the user's home for the working copy.")
@click.option("--pull", "pulls", multiple=True, help="Path to copy out after the command (repeatable).")
@click.option("--dest", type=click.Path(file_okay=False), default=".", show_default=True, help="Where pulled files go.")
@click.pass_obj
def launch(
    state: CliState,
    image: str,
    cmd: tuple[str, ...],
    name: str | None,
    keep: bool,
    ephemeral: bool,
    packages: tuple[str, ...],
    user: str | None,
    uid: int | None,
    git_source: str | None,
    include_changes: bool,
    target: str | None,
    pulls: tuple[str, ...],
    dest: str,
) -> None:
    """Launch a container, provision it, run a command and collect the results.

    Example:
        lxcdev launch ubuntu:24.04 --git . --pull src/build.log -- make -C src check
    """
    config = state.config
    command = list(cmd)
    if command and command[0] == "--":
        command = command[1:]

    plan = LaunchPlan.from_config(
        config,
        image=image,
        name=name,
        ephemeral=ephemeral or None,
        packages=list(dict.fromkeys([*config.provision.packages, *packages])),
        user=user,
        uid=uid,
        git_source=Path(git_source) if git_source else None,
        include_changes=include_changes or None,
        git_target=target,
        command=command,
        pulls=list(pulls),
        dest=Path(dest),
    )
    if user and uid is None and user != config.provision.user:
        # The configured uid belongs to the configured user.
        plan.uid = None

    run_ctx = state.run_context(keep=keep or config.container.keep)
    sink = state.telemetry()
    prune_telemetry_file(sink.path, config.telemetry.retention_days)

    report = Orchestrator(run_ctx, lxc=state.lxc(), telemetry=sink).run(plan)
    _print_report(report)
    if not report.ok:
        sys.exit(report.exit_code)


def _print_report(report: RunReport) -> None:
    click.echo(f"Container: {report.container}{' (kept)' if report.kept else ''}")
    if report.run_id:
        click.echo(f"Run: {report.run_id} (lxcdev telemetry tail --run {report.run_id})")
    for step in report.completed:
        click.echo(f"  ✓ {step}")
    for failure in report.failures:
        click.echo(f"  ✗ {failure.step}: {failure.error}", err=True)


@cli.command("wait-boot")
@click.option("--container", default="", help="Container to wait for (default: this machine).")
@click.option("--timeout", type=int, help="Seconds to wait (default: boot.timeout_seconds).")
@click.pass_obj
def wait_boot(state: CliState, container: str, timeout: int | None) -> None:
    """Wait until a container has finished booting; exit 1 on timeout."""
    boot_config = state.config.boot
    if container:
        lxc = state.lxc()

        def probe(argv: Sequence[str]) -> subprocess.CompletedProcess:
            return lxc.exec(container, argv, check=False)

    else:
        probe = local_probe

    result = wait_for_boot(
        probe,
        timeout=boot_config.timeout_seconds if timeout is None else timeout,
        ctx=state.run_context(),
        bus_warning_after=boot_config.bus_warning_after,
        network_host=boot_config.network_probe_host,
    )
    if not result.ok:
        click.echo(f"lxcdev: timed out after {result.attempts} polls ({result.strategy})", err=True)
        sys.exit(1)
    click.echo(f"booted ({result.strategy}, {result.attempts} polls)")


@cli.command("exec", context_settings={"ignore_unknown_options": True})
@context_options
@click.argument("cmd", nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_obj
def exec_command(state: CliState, container: str, user: str, directory: str, cmd: tuple[str, ...]) -> None:
    """Run a command in a context and exit with its status.

    Example:
        lxcdev exec --container dev --user me -- make check
    """
    argv = list(cmd)
    if argv and argv[0] == "--":
        argv = argv[1:]
    if not argv:
        raise UsageError("exec needs a command")

    def local(run_ctx: RunContext, workdir: Path) -> int:
        try:
            return subprocess.run(argv, cwd=str(workdir)).returncode
        except FileNotFoundError:
            run_ctx.warn(f"command not found: {argv[0]}")
            return 127

    _dispatch(state, ExecutionContext(container, user, directory), ["exec", "--", *argv], local)


@cli.command("install-packages")
@context_options
@click.argument("packages", nargs=-1, required=True)
@click.pass_obj
def install_packages_command(
    state: CliState, container: str, user: str, directory: str, packages: tuple[str, ...]
) -> None:
    """Install Debian packages that are not installed yet."""

    def local(run_ctx: RunContext, workdir: Path) -> int:
        install_packages(packages, run_ctx)
        return 0

    _dispatch(state, ExecutionContext(container, user, directory), ["install-packages", *packages], local)


@cli.command("add-user")
@click.argument("name")
@click.option("--uid", type=int, help="UID for the new user.")
@click.option("--sudo/--no-sudo", default=True, show_default=True, help="Grant passwordless sudo.")
@click.option("--shell", default="/bin/bash", show_default=True)
@click.option("--container", default="", help="Container to add the user in (default: here).")
@click.pass_obj
def add_user_command(
    state: CliState, name: str, uid: int | None, sudo: bool, shell: str, container: str
) -> None:
    """Create a user with a home directory (runs as root)."""
    command = ["add-user", name, "--shell", shell]
    if uid is not None:
        command += ["--uid", str(uid)]
    if not sudo:
        command.append("--no-sudo")

    def local(run_ctx: RunContext, workdir: Path) -> int:
        add_user(name, uid=uid, sudo=sudo, shell=shell, ctx=run_ctx)
        return 0

    _dispatch(state, ExecutionContext(container, "root"), command, local)


@cli.command("git-export")
@click.argument("source", type=click.Path(exists=True, file_okay=False), default=".")
@click.option("--include-changes", is_flag=True, help="Have the receiver apply uncommitted changes.")
@click.pass_obj
def git_export(state: CliState, source: str, include_changes: bool) -> None:
    """Write the transfer stream for a working copy to stdout."""
    out = click.get_binary_stream("stdout")
    export_repository(source, out, include_changes or state.config.git.include_changes, state.run_context())


@cli.command("git-import")
@context_options
@click.argument("target")
@click.option("--force", is_flag=True, help="Replace a target that is not a git working copy.")
@click.pass_obj
def git_import(state: CliState, container: str, user: str, directory: str, target: str, force: bool) -> None:
    """Recreate a working copy from a transfer stream on stdin.

    Example:
        lxcdev git-export | lxcdev git-import --container dev --user me src
    """
    command = ["git-import", target] + (["--force"] if force else [])

    def local(run_ctx: RunContext, workdir: Path) -> int:
        stream = click.get_binary_stream("stdin")
        manifest = import_repository(target, stream, run_ctx, base=workdir, force=force)
        run_ctx.note(f"imported {target} at {manifest.ref}")
        return 0

    _dispatch(state, ExecutionContext(container, user, directory), command, local)


@cli.command("git-push")
@context_options
@click.argument("target", required=False)
@click.option("--source", type=click.Path(exists=True, file_okay=False), default=".", show_default=True)
@click.option("--include-changes", is_flag=True, help="Apply uncommitted changes at the target.")
@click.option("--force", is_flag=True, help="Replace a target that is not a git working copy.")
@click.pass_obj
def git_push(
    state: CliState,
    container: str,
    user: str,
    directory: str,
    target: str | None,
    source: str,
    include_changes: bool,
    force: bool,
) -> None:
    """Transfer a working copy into a context in one step."""
    run_ctx = state.run_context()
    dispatcher = Dispatcher(run_ctx, lxc=state.lxc())
    manifest = push_repository(
        source,
        target or state.config.git.target_dir,
        ExecutionContext(container, user, directory),
        dispatcher,
        include_changes=include_changes or state.config.git.include_changes,
        force=force,
    )
    click.echo(f"✓ Pushed {manifest.ref}{' (detached)' if manifest.detached else ''}")


@cli.command("git-clone")
@context_options
@click.argument("url")
@click.argument("target")
@click.option("--branch", help="Branch to check out.")
@click.pass_obj
def git_clone_command(
    state: CliState, container: str, user: str, directory: str, url: str, target: str, branch: str | None
) -> None:
    """Clone a repository in a context."""
    command = ["git-clone", url, target] + (["--branch", branch] if branch else [])

    def local(run_ctx: RunContext, workdir: Path) -> int:
        git_clone(url, workdir / target, branch=branch)
        return 0

    _dispatch(state, ExecutionContext(container, user, directory), command, local)


@cli.command()
@click.option("--container", required=True, help="Container to copy from.")
@click.argument("paths", nargs=-1, required=True)
@click.option("--dest", type=click.Path(file_okay=False), default=".", show_default=True)
@click.pass_obj
def pull(state: CliState, container: str, paths: tuple[str, ...], dest: str) -> None:
    """Copy files or directories out of a container."""
    lxc = state.lxc()
    report = RunReport(container=container)
    Path(dest).mkdir(parents=True, exist_ok=True)
    for path in paths:
        try:
            lxc.pull_file(container, path, dest, recursive=True)
        except ExternalToolError as e:
            report.failures.append(StepFailure(step=f"pull {path}", error=str(e), exit_code=e.exit_code))
            continue
        report.completed.append(f"pull {path}")
    _print_report(report)
    if not report.ok:
        sys.exit(report.exit_code)


@cli.command()
@click.option("--container", required=True, help="Container to delete.")
@click.pass_obj
def delete(state: CliState, container: str) -> None:
    """Stop and delete a container."""
    state.lxc().delete(container)
    click.echo(f"✓ Deleted {container}")


@cli.group()
def patch() -> None:
    """Debian patch series utilities."""


@patch.command("cherry-pick")
@click.argument("commit")
@click.option(
    "--upstream",
    type=click.Path(exists=True, file_okay=False),
    required=True,
    help="Upstream git repository holding the commit.",
)
@click.option(
    "--package-dir",
    type=click.Path(exists=True, file_okay=False),
    default=".",
    show_default=True,
    help="Debian source package directory.",
)
@click.option("--edit/--no-edit", default=None, help="Open the changelog in an editor.")
@click.pass_obj
def patch_cherry_pick(state: CliState, commit: str, upstream: str, package_dir: str, edit: bool | None) -> None:
    """Add an upstream commit to debian/patches and debian/changelog.

    Example:
        lxcdev patch cherry-pick 1a2b3c4 --upstream ../upstream
    """
    changelog = state.config.changelog
    if edit is not None:
        changelog = changelog.model_copy(update={"edit": edit})
    result = cherry_pick(
        commit,
        upstream,
        package_dir,
        patches=state.config.patches,
        changelog=changelog,
        ctx=state.run_context(),
    )
    click.echo(f"✓ Added {result.patch_path}")
    click.echo(f"  {result.changelog_entry}")


@cli.group()
def jenkins() -> None:
    """Jenkins utilities."""


@jenkins.command("fetch")
@click.argument("job")
@click.option("--build", "number", type=int, help="Build number (default: last build).")
@click.option("--console", is_flag=True, help="Print the console output.")
@click.option("--dest", type=click.Path(file_okay=False), help="Download and extract artifacts here.")
@click.option("--require-success", is_flag=True, help="Exit 1 unless the build succeeded.")
@click.pass_obj
def jenkins_fetch(
    state: CliState,
    job: str,
    number: int | None,
    console: bool,
    dest: str | None,
    require_success: bool,
) -> None:
    """Show a build's status, and optionally its console output and artifacts."""
    with JenkinsClient(state.config.jenkins) as client:
        build = client.get_build(job, number)
        status = client.build_status(build)
        click.echo(f"{job} #{build.get('number')}: {status}")
        if console:
            click.echo(client.console_text(job, build["number"]), nl=False)
        if dest:
            for name in client.fetch_artifacts(build, dest):
                click.echo(f"  {name}")
    if require_success and status != "SUCCESS":
        sys.exit(1)


@cli.group()
def telemetry() -> None:
    """Telemetry utilities."""


@telemetry.command("tail")
@click.option(
    "--lines",
    "-n",
    type=int,
    default=50,
    show_default=True,
    help="Number of telemetry lines to show.",
)
@click.option("--run", "run_id", help="Only show events of this launch run.")
@click.pass_obj
def telemetry_tail(state: CliState, lines: int, run_id: str | None) -> None:
    """Print the last N telemetry events."""
    sink = state.telemetry()
    if not sink.path.exists():
        raise click.ClickException(f"Telemetry file not found: {sink.path}")
    for ln in sink.tail(lines, run_id=run_id):
        click.echo(ln, nl=False)


DEFAULT_CONFIG = """# lxcdev configuration

verbosity: normal

container:
  image: ubuntu:24.04
  name_prefix: lxcdev
  keep: false
  ephemeral: false
  remote_python: python3
  remote_tmp: /tmp

boot:
  timeout_seconds: 30
  bus_warning_after: 5
  network_probe_host: archive.ubuntu.com

provision:
  packages:
    - git
    - sudo
  # user: defaults to the invoking user, with the same uid
  sudo: true
  shell: /bin/bash

git:
  target_dir: src
  include_changes: false

patches:
  patches_dir: debian/patches
  series: series
  refresh_args: "-p ab --no-timestamps --no-index"

changelog:
  edit: false
  message_template: "Cherry-pick upstream commit {short}: {subject}"

jenkins:
  # url: https://jenkins.example.org
  # user: me
  # token: set LXCDEV_JENKINS_TOKEN instead
  timeout_seconds: 60
  verify_tls: true

telemetry:
  enabled: true
  log_path: .lxcdev/telemetry.jsonl
  retention_days: 30
"""


@cli.command()
@click.argument("project_path", type=click.Path(exists=True, file_okay=False), default=".")
def init(project_path: str) -> None:
    """Create a default .lxcdev.yml configuration file.

    Example:
        lxcdev init /path/to/project
    """
    config_path = Path(project_path).resolve() / CONFIG_FILENAME

    if config_path.exists():
        click.echo(f"Configuration already exists: {config_path}")
        if not click.confirm("Overwrite?"):
            return

    config_path.write_text(DEFAULT_CONFIG)
    click.echo(f"✓ Created configuration: {config_path}")


def main() -> None:
    """Entry point for CLI."""
    cli()


if __name__ == "__main__":
    main()
