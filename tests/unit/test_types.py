"""Unit tests for core types and the error taxonomy."""

import pytest

from lxcdev.errors import (
    ExternalToolError,
    LxcdevError,
    NestingError,
    PreconditionError,
    TransferError,
    UsageError,
)
from lxcdev.types import (
    BootResult,
    BootState,
    DiffMode,
    RunContext,
    RunReport,
    StepFailure,
    TransferManifest,
)


class TestRunContext:
    def test_invalid_verbosity(self):
        with pytest.raises(ValueError, match="Invalid verbosity"):
            RunContext(verbosity="loud")

    def test_from_environ(self, monkeypatch):
        monkeypatch.setenv("LXCDEV_CONTAINER", "dev")
        assert RunContext.from_environ().current_container == "dev"
        assert RunContext.from_environ(current_container="").current_container == ""

    def test_note_honours_verbosity(self, capsys):
        quiet = RunContext(verbosity="quiet")
        quiet.note("progress")
        quiet.warn("careful")
        RunContext(verbosity="verbose").note("detail", level="verbose")

        err = capsys.readouterr().err
        assert "progress" not in err
        assert "lxcdev: warning: careful" in err
        assert "lxcdev: detail" in err

    def test_proxy_environment(self, monkeypatch, no_proxy_env):
        monkeypatch.setenv("no_proxy", "localhost")
        monkeypatch.setenv("UNRELATED", "x")
        assert RunContext().proxy_environment() == {"no_proxy": "localhost"}


class TestTransferManifest:
    def test_without_diff(self):
        manifest = TransferManifest(ref="main")
        assert manifest.to_dict() == {"format": 1, "ref": "main", "detached": False, "diff": None}

    def test_from_dict_with_diff(self):
        manifest = TransferManifest.from_dict(
            {"format": 1, "ref": "abc123", "detached": True, "diff": {"mode": "apply", "name": "x.diff"}}
        )
        assert manifest.diff_mode is DiffMode.APPLY
        assert manifest.diff_name == "x.diff"
        assert manifest.detached

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            TransferManifest.from_dict({"ref": "main", "diff": {"mode": "maybe"}})


class TestReports:
    def test_boot_result(self):
        assert BootResult(BootState.DONE, "systemd", 2).ok
        assert not BootResult(BootState.TIMED_OUT, "systemd", 30).ok

    def test_run_report_exit_code(self):
        report = RunReport(container="c1")
        assert report.ok and report.exit_code == 0

        report.failures += [StepFailure("run", "exited 2", 2), StepFailure("pull /x", "missing", 1)]
        assert not report.ok
        assert report.exit_code == 2


class TestErrors:
    def test_exit_codes(self):
        assert UsageError("bad").exit_code == 2
        assert PreconditionError("no").exit_code == 1
        assert ExternalToolError(["lxc", "info"], 7).exit_code == 7
        assert ExternalToolError(["lxc", "info"], -9).exit_code == 1

    def test_external_tool_message(self):
        err = ExternalToolError(["git", "apply", "my file"], 1, "error: patch failed\n")
        assert str(err) == "command failed (1): git apply 'my file'\nerror: patch failed"

    def test_hierarchy(self):
        assert issubclass(NestingError, PreconditionError)
        assert issubclass(TransferError, ExternalToolError)
        assert issubclass(TransferError, OSError)
        assert issubclass(UsageError, LxcdevError)

    def test_transfer_error(self):
        err = TransferError("checkout of main failed", ["git", "checkout"], 128, "fatal: bad ref")
        assert str(err) == "checkout of main failed: fatal: bad ref"
        assert err.exit_code == 128
