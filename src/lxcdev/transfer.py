"""Git state transfer: pack a working copy into a tar stream and recreate it elsewhere.

The stream is a tar archive whose root is the contents of the git metadata
directory, plus a few ``lxcdev-*`` members:

- ``lxcdev-ref``: one line, the branch name or commit hash to check out
- ``lxcdev-changes.apply.diff``: local edits to apply on arrival, or
- ``lxcdev-changes.diff``: local edits kept for the operator, not applied
- ``lxcdev-transfer.json``: the same information as a typed manifest

Everything lands in ``<target>/.git`` on extraction; the ``lxcdev-*`` members
are consumed and removed from there.
"""

from __future__ import annotations

import io
import json
import os
import shutil
import subprocess
import tarfile
import tempfile
import uuid
from pathlib import Path
from typing import BinaryIO

from .dispatch import Dispatcher
from .errors import PreconditionError, TransferError
from .ops.git_ops import (
    git_apply,
    git_checkout,
    git_checkout_worktree,
    git_current_ref,
    git_diff_against,
    git_metadata_dir,
)
from .types import DiffMode, ExecutionContext, RunContext, TransferManifest

FORMAT_VERSION = 1

REF_MARKER = "lxcdev-ref"
MANIFEST_NAME = "lxcdev-transfer.json"
DIFF_NAMES = {
    DiffMode.APPLY: "lxcdev-changes.apply.diff",
    DiffMode.INFORMATIONAL: "lxcdev-changes.diff",
}

_HAS_DATA_FILTER = hasattr(tarfile, "data_filter")

# Metadata entries that only make sense on the source host.
_SKIPPED_ENTRIES = {"worktrees", "index.lock", "gc.pid", "gc.log"}


def _add_bytes(tar: tarfile.TarFile, name: str, data: bytes) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = 0o644
    tar.addfile(info, io.BytesIO(data))


def export_repository(
    source: Path | str,
    out: BinaryIO,
    include_changes: bool = False,
    ctx: RunContext | None = None,
) -> TransferManifest:
    """Write the transfer stream for the working copy at ``source`` to ``out``.

    Uncommitted changes are always captured; ``include_changes`` decides
    whether the receiving side applies them or only keeps them as a file.
    """
    ctx = ctx or RunContext()
    source = Path(source).resolve()

    git_dir = git_metadata_dir(source)
    ref, detached = git_current_ref(source)
    diff = git_diff_against(source, "HEAD")

    manifest = TransferManifest(ref=ref, detached=detached, format=FORMAT_VERSION)
    if diff:
        manifest.diff_mode = DiffMode.APPLY if include_changes else DiffMode.INFORMATIONAL
        manifest.diff_name = DIFF_NAMES[manifest.diff_mode]
        if not include_changes:
            ctx.warn(
                f"{source} has uncommitted changes; they are shipped as "
                f"{manifest.diff_name} and not applied (use --include-changes)"
            )

    ctx.note(f"packing {git_dir} at {ref}", level="verbose")
    try:
        with tarfile.open(fileobj=out, mode="w|") as tar:
            for entry in sorted(os.listdir(git_dir)):
                if entry in _SKIPPED_ENTRIES:
                    continue
                tar.add(str(git_dir / entry), arcname=entry)
            _add_bytes(tar, REF_MARKER, (ref + "\n").encode("utf-8"))
            if diff:
                _add_bytes(tar, manifest.diff_name, diff)
            _add_bytes(tar, MANIFEST_NAME, json.dumps(manifest.to_dict()).encode("utf-8"))
        out.flush()
    except (tarfile.TarError, OSError) as e:
        raise TransferError(f"writing transfer stream failed: {e}") from e
    return manifest


def _read_manifest(git_dir: Path) -> TransferManifest:
    manifest_path = git_dir / MANIFEST_NAME
    ref_path = git_dir / REF_MARKER
    if manifest_path.exists():
        try:
            manifest = TransferManifest.from_dict(json.loads(manifest_path.read_text(encoding="utf-8")))
        except (ValueError, KeyError, TypeError) as e:
            raise TransferError(f"malformed {MANIFEST_NAME}: {e}") from e
        if manifest.format != FORMAT_VERSION:
            raise TransferError(f"unsupported transfer format {manifest.format}")
        manifest_path.unlink()
        ref_path.unlink(missing_ok=True)
        return manifest

    # Streams without a manifest: the filenames carry the intent.
    if not ref_path.exists():
        raise TransferError(f"transfer stream has no {REF_MARKER}")
    lines = ref_path.read_text(encoding="utf-8").splitlines()
    ref_path.unlink()
    if not lines or not lines[0].strip():
        raise TransferError(f"{REF_MARKER} is empty")
    manifest = TransferManifest(ref=lines[0].strip())
    for mode, name in DIFF_NAMES.items():
        if (git_dir / name).exists():
            manifest.diff_mode = mode
            manifest.diff_name = name
            break
    return manifest


def _check_member(member: tarfile.TarInfo, dest: Path) -> None:
    """Refuse what the ``data`` extraction filter refuses."""
    target = (dest / member.name).resolve()
    if os.path.isabs(member.name) or not target.is_relative_to(dest):
        raise TransferError(f"unsafe path in transfer stream: {member.name}")
    if member.isdev():
        raise TransferError(f"device file in transfer stream: {member.name}")
    if member.issym():
        link = (target.parent / member.linkname).resolve()
    elif member.islnk():
        link = (dest / member.linkname).resolve()
    else:
        member.mode &= 0o755
        return
    if os.path.isabs(member.linkname) or not link.is_relative_to(dest):
        raise TransferError(f"link outside the target in transfer stream: {member.name}")


def _extract(tar: tarfile.TarFile, dest: Path) -> None:
    if _HAS_DATA_FILTER:
        tar.extractall(dest, filter="data")
        return
    # Older interpreters (before 3.10.12 / 3.11.4) have no extraction filters.
    dest = dest.resolve()
    for member in tar:
        _check_member(member, dest)
        tar.extract(member, dest)


def _check_target(base: Path, target: Path, force: bool) -> None:
    if base.is_relative_to(target) or target == Path.home():
        raise PreconditionError(f"refusing to replace {target}")
    if target.is_file() or target.is_symlink():
        raise PreconditionError(f"{target} exists and is not a directory")
    if target.is_dir() and not force and any(target.iterdir()) and not (target / ".git").exists():
        raise PreconditionError(
            f"{target} is not empty and is not a git working copy; pass --force to replace it"
        )


def import_repository(
    target: Path | str,
    stream: BinaryIO,
    ctx: RunContext | None = None,
    base: Path | str | None = None,
    force: bool = False,
) -> TransferManifest:
    """Recreate a working copy at ``base/target`` from a transfer stream.

    The previous contents of the target are replaced, never merged. The new
    tree is assembled in a staging directory next to the target and renamed
    into place, so a failure leaves the old target as it was.
    """
    ctx = ctx or RunContext()
    base = Path(base or os.getcwd()).resolve()
    target_path = (base / target).resolve()
    _check_target(base, target_path, force)
    target_path.parent.mkdir(parents=True, exist_ok=True)

    staging = Path(tempfile.mkdtemp(prefix=f".{target_path.name}.lxcdev-", dir=target_path.parent))
    try:
        # mkdtemp creates 0700; the working copy gets what mkdir would give it.
        os.chmod(staging, 0o777 & ~_current_umask())
        git_dir = staging / ".git"
        git_dir.mkdir()
        try:
            with tarfile.open(fileobj=stream, mode="r|*") as tar:
                _extract(tar, git_dir)
        except (tarfile.TarError, OSError) as e:
            raise TransferError(f"extracting transfer stream failed: {e}") from e

        manifest = _read_manifest(git_dir)
        ctx.note(f"checking out {manifest.ref} in {target_path}", level="verbose")
        git_checkout(staging, manifest.ref)
        git_checkout_worktree(staging)

        if manifest.diff_mode is not None:
            diff_path = git_dir / str(manifest.diff_name)
            if not diff_path.exists():
                raise TransferError(f"transfer stream announces {manifest.diff_name} but lacks it")
            if manifest.diff_mode is DiffMode.APPLY:
                git_apply(staging, diff_path)
                diff_path.unlink()
            else:
                shutil.move(str(diff_path), str(staging / diff_path.name))
                ctx.warn(f"local changes not applied; see {target_path / diff_path.name}")

        _swap_into_place(staging, target_path)
    finally:
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)
    return manifest


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


def _swap_into_place(staging: Path, target: Path) -> None:
    if not target.exists():
        os.rename(staging, target)
        return
    retired = target.parent / f".{target.name}.lxcdev-old-{uuid.uuid4().hex[:8]}"
    os.rename(target, retired)
    try:
        os.rename(staging, target)
    except OSError:
        os.rename(retired, target)
        raise
    shutil.rmtree(retired, ignore_errors=True)


def push_repository(
    source: Path | str,
    target: str,
    where: ExecutionContext,
    dispatcher: Dispatcher,
    include_changes: bool = False,
    force: bool = False,
) -> TransferManifest:
    """Pack ``source`` here and unpack it as ``target`` in the context ``where``.

    When the context is not this process, the unpacking side is a re-invoked
    ``lxcdev git-import`` reading the stream from its stdin.
    """
    ctx = dispatcher.ctx
    # Fail on a bad source before anything is shipped or spawned.
    git_metadata_dir(Path(source))
    command = ["git-import", target] + (["--force"] if force else [])
    with dispatcher.prepare(where, command) as decision:
        if decision.local:
            with tempfile.TemporaryFile() as buf:
                manifest = export_repository(source, buf, include_changes, ctx)
                buf.seek(0)
                import_repository(target, buf, ctx, base=dispatcher.resolve_directory(decision.directory), force=force)
            return manifest

        ctx.note(f"transferring {source} to {where.container or 'localhost'}:{target}")
        proc = subprocess.Popen(decision.argv, stdin=subprocess.PIPE)
        assert proc.stdin is not None
        try:
            manifest = export_repository(source, proc.stdin, include_changes, ctx)
        except TransferError as e:
            # The receiver only stops reading at end of input.
            _close_quietly(proc.stdin)
            rc = proc.wait()
            # A receiver that died mid-stream shows up here as a broken pipe.
            if rc != 0 and isinstance(e.__cause__, BrokenPipeError):
                raise TransferError("git-import failed", decision.argv, rc) from e
            raise
        except BaseException:
            proc.kill()
            proc.wait()
            raise
        finally:
            _close_quietly(proc.stdin)
        rc = proc.wait()
        if rc != 0:
            raise TransferError("git-import failed", decision.argv, rc)
        return manifest


def _close_quietly(pipe: BinaryIO) -> None:
    if pipe.closed:
        return
    try:
        pipe.close()
    except BrokenPipeError:
        pass
