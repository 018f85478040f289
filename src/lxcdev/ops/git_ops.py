import subprocess
from pathlib import Path

from ..errors import ExternalToolError, TransferError


def _run(root: Path, args: list[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(args, cwd=str(root), text=True, capture_output=True)


def _run_bytes(root: Path, args: list[str]) -> subprocess.CompletedProcess[bytes]:
    return subprocess.run(args, cwd=str(root), capture_output=True)


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def _check(root: Path, args: list[str]) -> str:
    res = _run(root, args)
    if res.returncode != 0:
        raise ExternalToolError(args, res.returncode, res.stderr)
    return res.stdout


def git_metadata_dir(root: Path) -> Path:
    """Return the metadata directory shared by every worktree of ``root``.

    For a linked worktree ``git rev-parse --git-dir`` points below
    ``<common>/worktrees/``; the common directory is what holds objects and
    refs, so that is what gets transferred.
    """
    res = _run(root, ["git", "rev-parse", "--git-common-dir"])
    if res.returncode != 0:
        raise TransferError(f"not a git repository: {root}", res.args, res.returncode, res.stderr)
    common = Path(res.stdout.strip())
    if not common.is_absolute():
        common = Path(root) / common
    return common.resolve()


def git_current_ref(root: Path) -> tuple[str, bool]:
    """Return ``(ref, detached)``: the branch name, or the commit hash if detached."""
    res = _run(root, ["git", "symbolic-ref", "--short", "-q", "HEAD"])
    if res.returncode == 0 and res.stdout.strip():
        return res.stdout.strip(), False
    res = _run(root, ["git", "rev-parse", "--verify", "-q", "HEAD"])
    if res.returncode != 0 or not res.stdout.strip():
        raise TransferError("cannot resolve the current reference", res.args, res.returncode or 1, res.stderr)
    return res.stdout.strip(), True


def git_diff_against(root: Path, ref: str) -> bytes:
    """Unified diff of tracked changes (staged and unstaged) relative to ``ref``.

    Returned as bytes: file contents need not be valid UTF-8.
    """
    args = ["git", "diff", "--binary", "--no-color", "--no-ext-diff", ref, "--"]
    res = _run_bytes(root, args)
    if res.returncode != 0:
        raise TransferError("cannot compute local changes", args, res.returncode, _decode(res.stderr))
    return res.stdout


def git_checkout(root: Path, ref: str) -> None:
    args = ["git", "checkout", "-q", "-f", ref]
    res = _run(root, args)
    if res.returncode != 0:
        raise TransferError(f"checkout of {ref} failed", args, res.returncode, res.stderr)


def git_checkout_worktree(root: Path) -> None:
    """Make the index and the working tree match HEAD."""
    args = ["git", "reset", "-q", "--hard"]
    res = _run(root, args)
    if res.returncode != 0:
        raise TransferError("checkout of the working tree failed", args, res.returncode, res.stderr)


def git_apply(root: Path, patch_path: Path) -> None:
    args = ["git", "apply", "--whitespace=nowarn", str(patch_path)]
    res = _run(root, args)
    if res.returncode != 0:
        raise TransferError(f"applying {patch_path.name} failed", args, res.returncode, res.stderr)


def git_clone(url: str, target: Path, branch: str | None = None) -> None:
    args = ["git", "clone", "-q"]
    if branch:
        args += ["--branch", branch]
    args += [url, str(target)]
    _check(Path(target).parent, args)


def git_status_porcelain(root: Path) -> list[str]:
    """Return `git status --porcelain` lines (empty list means clean)."""
    res = _run(root, ["git", "status", "--porcelain"])
    if res.returncode != 0:
        raise ExternalToolError(res.args, res.returncode, res.stderr)
    return [ln for ln in res.stdout.splitlines() if ln.strip()]


def git_show_commit(root: Path, commit: str) -> dict[str, str]:
    """Return hash, abbreviated hash, subject and author of ``commit``."""
    fmt = "%H%x00%h%x00%s%x00%an <%ae>"
    out = _check(root, ["git", "show", "-s", f"--format={fmt}", commit, "--"])
    full, short, subject, author = out.rstrip("\n").split("\x00", 3)
    return {"hash": full, "short": short, "subject": subject, "author": author}


def git_format_patch(root: Path, commit: str) -> bytes:
    """Format exactly one commit as an mbox patch, byte for byte."""
    args = ["git", "format-patch", "-1", "--stdout", "--no-signature", commit]
    res = _run_bytes(root, args)
    if res.returncode != 0:
        raise ExternalToolError(args, res.returncode, _decode(res.stderr))
    return res.stdout
