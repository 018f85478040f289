"""Cherry-pick an upstream git commit into a Debian quilt patch series."""

from __future__ import annotations

import os
import re
import subprocess
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .config import ChangelogConfig, PatchesConfig
from .errors import ExternalToolError, PreconditionError
from .ops.git_ops import git_format_patch, git_show_commit, git_status_porcelain
from .types import RunContext

Runner = Callable[..., subprocess.CompletedProcess]

# quilt push/pop exit with 2 when there is nothing to do.
QUILT_NOTHING_TO_DO = 2


@dataclass
class CherryPickResult:
    commit: str
    patch_name: str
    patch_path: Path
    changelog_entry: str


def slugify(text: str) -> str:
    """Normalize commit subjects for patch file naming."""
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "-", text.strip().lower())
    cleaned = re.sub(r"-+", "-", cleaned).strip("-._")
    return cleaned[:48] or "upstream"


class QuiltSeries:
    """quilt commands against one package directory and series file."""

    def __init__(self, package_dir: Path, config: PatchesConfig, runner: Runner = subprocess.run):
        self.package_dir = Path(package_dir)
        self.config = config
        self.runner = runner

    @property
    def patches_dir(self) -> Path:
        return self.package_dir / self.config.patches_dir

    @property
    def series_path(self) -> Path:
        return self.patches_dir / self.config.series

    def _env(self) -> dict[str, str]:
        env = os.environ.copy()
        env.update(
            {
                "QUILT_PATCHES": self.config.patches_dir,
                "QUILT_SERIES": self.config.series,
                "QUILT_REFRESH_ARGS": self.config.refresh_args,
            }
        )
        return env

    def _run(self, args: list[str], ok_codes: tuple[int, ...] = (0,)) -> subprocess.CompletedProcess:
        argv = ["quilt", *args]
        p = self.runner(argv, cwd=str(self.package_dir), env=self._env(), text=True, capture_output=True)
        if p.returncode not in ok_codes:
            raise ExternalToolError(argv, p.returncode, p.stderr or "")
        return p

    def series(self) -> list[str]:
        if not self.series_path.exists():
            return []
        names = []
        for line in self.series_path.read_text(encoding="utf-8").splitlines():
            line = line.split("#", 1)[0].strip()
            if line:
                names.append(line.split()[0])
        return names

    def applied(self) -> list[str]:
        p = self._run(["applied"], ok_codes=(0, QUILT_NOTHING_TO_DO))
        return [Path(ln.strip()).name for ln in p.stdout.splitlines() if ln.strip()]

    def push_all(self) -> None:
        self._run(["push", "-a", "-q"], ok_codes=(0, QUILT_NOTHING_TO_DO))

    def pop_all(self) -> None:
        self._run(["pop", "-a", "-q"], ok_codes=(0, QUILT_NOTHING_TO_DO))

    def import_patch(self, patch_file: Path, name: str) -> None:
        self._run(["import", "-P", name, str(patch_file)])

    def push(self) -> None:
        self._run(["push", "-q"])

    def refresh(self) -> None:
        self._run(["refresh"])

    def delete(self, name: str) -> None:
        """Drop ``name`` from the series and remove its file; it must be the top patch if applied."""
        self._run(["delete", "-r", name])


def changelog_append(
    package_dir: Path,
    message: str,
    edit: bool = False,
    runner: Runner = subprocess.run,
) -> None:
    """Add ``message`` to debian/changelog, or open it for editing first."""
    if edit:
        argv = ["dch", "--append", message]
        p = runner(argv, cwd=str(package_dir))
        if p.returncode != 0:
            raise ExternalToolError(argv, p.returncode)
        argv = ["dch", "--edit"]
        p = runner(argv, cwd=str(package_dir))
        if p.returncode != 0:
            raise ExternalToolError(argv, p.returncode)
        return
    argv = ["dch", "--append", message]
    p = runner(argv, cwd=str(package_dir), text=True, capture_output=True, env={**os.environ, "EDITOR": "true"})
    if p.returncode != 0:
        raise ExternalToolError(argv, p.returncode, p.stderr or "")


def cherry_pick(
    commit: str,
    upstream: Path | str,
    package_dir: Path | str,
    patches: PatchesConfig | None = None,
    changelog: ChangelogConfig | None = None,
    ctx: RunContext | None = None,
    runner: Runner = subprocess.run,
) -> CherryPickResult:
    """Turn ``commit`` from the ``upstream`` repository into a new quilt patch.

    The patch goes on top of the series, is refreshed by quilt, and gets a
    changelog entry. When the series was not applied on entry it is popped
    again at the end.
    """
    ctx = ctx or RunContext()
    patches = patches or PatchesConfig()
    changelog = changelog or ChangelogConfig()
    package_dir = Path(package_dir)
    upstream = Path(upstream)

    if not (package_dir / "debian" / "changelog").exists():
        raise PreconditionError(f"{package_dir} is not a Debian source package (no debian/changelog)")

    info = git_show_commit(upstream, commit)
    name = f"{slugify(info['subject'])}.patch"
    quilt = QuiltSeries(package_dir, patches, runner)
    if name in quilt.series():
        raise PreconditionError(f"{name} is already in {quilt.series_path}")

    if (package_dir / ".git").exists() and git_status_porcelain(package_dir):
        ctx.warn(f"{package_dir} has uncommitted changes")

    was_applied = bool(quilt.applied())
    ctx.note(f"cherry-picking {info['short']} as {name}")
    quilt.push_all()
    try:
        entry = _add_patch(quilt, upstream, info, name, changelog, runner)
    finally:
        if not was_applied:
            quilt.pop_all()
    return CherryPickResult(
        commit=info["hash"],
        patch_name=name,
        patch_path=quilt.patches_dir / name,
        changelog_entry=entry,
    )


def _add_patch(
    quilt: QuiltSeries,
    upstream: Path,
    info: dict[str, str],
    name: str,
    changelog: ChangelogConfig,
    runner: Runner,
) -> str:
    with tempfile.TemporaryDirectory(prefix="lxcdev-patch-") as tmp:
        patch_file = Path(tmp) / name
        patch_file.write_bytes(git_format_patch(upstream, info["hash"]))
        quilt.import_patch(patch_file, name)
    try:
        quilt.push()
        quilt.refresh()
        entry = changelog.message_template.format(**info)
        changelog_append(quilt.package_dir, entry, edit=changelog.edit, runner=runner)
    except ExternalToolError:
        # Leave the series as it was so the same commit can be picked again.
        quilt.delete(name)
        raise
    return entry
