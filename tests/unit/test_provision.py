"""Unit tests for provision.py - packages and users."""

import stat

import pytest

from conftest import RecordingRunner, completed
from lxcdev.errors import ExternalToolError, UsageError
from lxcdev.provision import add_user, install_packages, is_package_installed


def _dpkg(installed):
    def handler(argv):
        if argv[0] == "dpkg-query":
            if argv[-1] in installed:
                return completed(argv, 0, "install ok installed")
            return completed(argv, 1, "", f"dpkg-query: no packages found matching {argv[-1]}")
        return None

    return handler


class TestInstallPackages:
    def test_installs_only_missing(self):
        runner = RecordingRunner(_dpkg({"git"}))

        installed = install_packages(["git", "quilt", "devscripts", "quilt"], runner=runner)

        assert installed == ["quilt", "devscripts"]
        apt = [c for c in runner.calls if c[0] == "apt-get"]
        assert apt == [
            ["apt-get", "update", "-q"],
            ["apt-get", "install", "-y", "-q", "--no-install-recommends", "quilt", "devscripts"],
        ]
        env = runner.kwargs[runner.calls.index(apt[1])]["env"]
        assert env["DEBIAN_FRONTEND"] == "noninteractive"

    def test_nothing_to_do(self):
        runner = RecordingRunner(_dpkg({"git", "sudo"}))

        assert install_packages(["git", "sudo"], runner=runner) == []
        assert not any(c[0] == "apt-get" for c in runner.calls)

    def test_empty_list(self):
        runner = RecordingRunner()
        assert install_packages([], runner=runner) == []
        assert runner.calls == []

    def test_invalid_name(self):
        runner = RecordingRunner()
        with pytest.raises(UsageError):
            install_packages(["git; rm -rf /"], runner=runner)
        assert runner.calls == []

    def test_apt_failure_propagates_status(self):
        def handler(argv):
            if argv[:2] == ["apt-get", "install"]:
                return completed(argv, 100, "", "E: Unable to locate package")
            return _dpkg(set())(argv)

        with pytest.raises(ExternalToolError) as excinfo:
            install_packages(["nonesuch"], runner=RecordingRunner(handler))
        assert excinfo.value.exit_code == 100

    def test_half_installed_is_not_installed(self):
        runner = RecordingRunner(lambda argv: completed(argv, 0, "deinstall ok config-files"))
        assert not is_package_installed("git", runner=runner)


class TestAddUser:
    def test_creates_user_with_sudo(self, tmp_path):
        runner = RecordingRunner(lambda argv: completed(argv, 1) if argv[0] == "id" else None)

        created = add_user("dev", uid=1500, runner=runner, sudoers_dir=tmp_path)

        assert created
        assert ["useradd", "--create-home", "--shell", "/bin/bash", "--uid", "1500", "dev"] in runner.calls
        entry = tmp_path / "lxcdev-dev"
        assert entry.read_text() == "dev ALL=(ALL) NOPASSWD:ALL\n"
        assert stat.S_IMODE(entry.stat().st_mode) == 0o440

    def test_without_sudo(self, tmp_path):
        runner = RecordingRunner(lambda argv: completed(argv, 1) if argv[0] == "id" else None)

        add_user("dev", sudo=False, runner=runner, sudoers_dir=tmp_path)

        assert not (tmp_path / "lxcdev-dev").exists()

    def test_existing_user_is_left_alone(self, tmp_path):
        runner = RecordingRunner(lambda argv: completed(argv, 0, "1000\n") if argv[0] == "id" else None)

        assert not add_user("dev", runner=runner, sudoers_dir=tmp_path)
        assert runner.calls == [["id", "-u", "dev"]]

    @pytest.mark.parametrize("name", ["Dev", "1dev", "dev user", "a" * 33, ""])
    def test_invalid_names(self, name, tmp_path):
        runner = RecordingRunner()
        with pytest.raises(UsageError):
            add_user(name, runner=runner, sudoers_dir=tmp_path)
        assert runner.calls == []
