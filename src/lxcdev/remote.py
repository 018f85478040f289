"""The lxcdev agent: the entry point re-invoked inside containers and as other users.

It runs from a zip application on a stock ``python3`` and therefore sticks
to the standard library. Usage::

    python3 lxcdev.pyz [--container=C] [--user=U] [--dir=D] [-v|-q] COMMAND ...

Commands: ``exec -- CMD...``, ``git-import TARGET``, ``git-clone URL TARGET``,
``install-packages PKG...``, ``add-user NAME``.
"""

from __future__ import annotations

import argparse
import subprocess
import sys
from pathlib import Path

from . import __version__
from .dispatch import Dispatcher, split_qualifiers
from .errors import LxcdevError, UsageError
from .ops.git_ops import git_clone
from .provision import add_user, install_packages
from .transfer import import_repository
from .types import RunContext

_VERBOSITY_FLAGS = {"-v": "verbose", "--verbose": "verbose", "-q": "quiet", "--quiet": "quiet"}


def _cmd_exec(args: argparse.Namespace, ctx: RunContext, workdir: Path) -> int:
    cmd = list(args.cmd)
    if cmd and cmd[0] == "--":
        cmd = cmd[1:]
    if not cmd:
        raise UsageError("exec needs a command")
    ctx.note(f"running {' '.join(cmd)} in {workdir}", level="verbose")
    try:
        return subprocess.run(cmd, cwd=str(workdir)).returncode
    except FileNotFoundError:
        ctx.warn(f"command not found: {cmd[0]}")
        return 127


def _cmd_git_import(args: argparse.Namespace, ctx: RunContext, workdir: Path) -> int:
    manifest = import_repository(args.target, sys.stdin.buffer, ctx, base=workdir, force=args.force)
    ctx.note(f"imported {args.target} at {manifest.ref}")
    return 0


def _cmd_git_clone(args: argparse.Namespace, ctx: RunContext, workdir: Path) -> int:
    git_clone(args.url, workdir / args.target, branch=args.branch)
    return 0


def _cmd_install_packages(args: argparse.Namespace, ctx: RunContext, workdir: Path) -> int:
    install_packages(args.packages, ctx)
    return 0


def _cmd_add_user(args: argparse.Namespace, ctx: RunContext, workdir: Path) -> int:
    add_user(args.name, uid=args.uid, sudo=args.sudo, shell=args.shell, ctx=ctx)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lxcdev-agent")
    parser.add_argument("--version", action="version", version=f"lxcdev {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("exec", help="run a command")
    p.add_argument("cmd", nargs=argparse.REMAINDER)
    p.set_defaults(func=_cmd_exec)

    p = sub.add_parser("git-import", help="recreate a working copy from a transfer stream on stdin")
    p.add_argument("target")
    p.add_argument("--force", action="store_true")
    p.set_defaults(func=_cmd_git_import)

    p = sub.add_parser("git-clone", help="clone a repository")
    p.add_argument("url")
    p.add_argument("target")
    p.add_argument("--branch")
    p.set_defaults(func=_cmd_git_clone)

    p = sub.add_parser("install-packages", help="install Debian packages")
    p.add_argument("packages", nargs="+")
    p.set_defaults(func=_cmd_install_packages)

    p = sub.add_parser("add-user", help="create a user")
    p.add_argument("name")
    p.add_argument("--uid", type=int)
    p.add_argument("--no-sudo", dest="sudo", action="store_false")
    p.add_argument("--shell", default="/bin/bash")
    p.set_defaults(func=_cmd_add_user)
    return parser


def run(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else list(argv)
    verbosity = "normal"
    try:
        where, rest = split_qualifiers(argv)
        while rest and rest[0] in _VERBOSITY_FLAGS:
            verbosity = _VERBOSITY_FLAGS[rest.pop(0)]
        args = build_parser().parse_args(rest)
        ctx = RunContext.from_environ(verbosity=verbosity)
        dispatcher = Dispatcher(ctx)
        with dispatcher.prepare(where, rest) as decision:
            if not decision.local:
                # stdin is inherited, so a transfer stream flows straight through.
                return subprocess.run(decision.argv).returncode
            return args.func(args, ctx, dispatcher.resolve_directory(decision.directory))
    except LxcdevError as e:
        print(f"lxcdev: error: {e}", file=sys.stderr)
        return e.exit_code


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
