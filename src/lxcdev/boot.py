"""Wait for a container (or the local host) to finish booting."""

from __future__ import annotations

import subprocess
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence

from .types import BootResult, BootState, RunContext

Probe = Callable[[Sequence[str]], subprocess.CompletedProcess]

DEFAULT_TIMEOUT_SECONDS = 30
CLOUD_INIT_BOOT_FINISHED = "/var/lib/cloud/instance/boot-finished"
SYSTEMD_RUNTIME_DIR = "/run/systemd/system"


def local_probe(argv: Sequence[str]) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(list(argv), text=True, capture_output=True)
    except FileNotFoundError as e:
        return subprocess.CompletedProcess(list(argv), 127, "", str(e))


class BootSignal(ABC):
    """One way of telling that boot has completed."""

    name: str = ""

    @abstractmethod
    def check(self, probe: Probe, attempt: int) -> tuple[bool, str]:
        """Return ``(done, output)`` for poll number ``attempt`` (1-based)."""


class CloudInitSignal(BootSignal):
    name = "cloud-init"

    def check(self, probe: Probe, attempt: int) -> tuple[bool, str]:
        p = probe(["test", "-f", CLOUD_INIT_BOOT_FINISHED])
        return p.returncode == 0, ""


class SystemdSignal(BootSignal):
    """``systemctl is-system-running``; anything but initializing/starting counts."""

    name = "systemd"
    NOT_YET = {"initializing", "starting", ""}

    def __init__(self, ctx: RunContext | None = None, bus_warning_after: int = 5):
        self.ctx = ctx or RunContext()
        self.bus_warning_after = bus_warning_after
        self._warned = False

    def check(self, probe: Probe, attempt: int) -> tuple[bool, str]:
        p = probe(["systemctl", "is-system-running"])
        out = ((p.stdout or "") + (p.stderr or "")).strip()
        if "Failed to connect to bus" in out:
            # Usually the bus is simply not up yet; only worth a word if it persists.
            if attempt > self.bus_warning_after and not self._warned:
                self.ctx.warn(f"systemd bus still unreachable after {attempt} attempts: {out}")
                self._warned = True
            return False, out
        state = (p.stdout or "").strip().splitlines()[-1:] or [""]
        return state[0] not in self.NOT_YET, state[0]


class NetworkSignal(BootSignal):
    """Last resort: the target can resolve a well-known host name."""

    name = "network"

    def __init__(self, host: str = "archive.ubuntu.com"):
        self.host = host

    def check(self, probe: Probe, attempt: int) -> tuple[bool, str]:
        p = probe(["getent", "hosts", self.host])
        return p.returncode == 0, (p.stdout or "").strip()


def select_signal(
    probe: Probe,
    ctx: RunContext | None = None,
    bus_warning_after: int = 5,
    network_host: str = "archive.ubuntu.com",
) -> BootSignal:
    """Pick the strategy once, from capability markers on the target."""
    if probe(["sh", "-c", "command -v cloud-init"]).returncode == 0:
        return CloudInitSignal()
    if probe(["test", "-d", SYSTEMD_RUNTIME_DIR]).returncode == 0:
        return SystemdSignal(ctx, bus_warning_after=bus_warning_after)
    return NetworkSignal(network_host)


def wait_for_boot(
    probe: Probe,
    timeout: int = DEFAULT_TIMEOUT_SECONDS,
    ctx: RunContext | None = None,
    signal: BootSignal | None = None,
    sleep: Callable[[float], None] = time.sleep,
    bus_warning_after: int = 5,
    network_host: str = "archive.ubuntu.com",
) -> BootResult:
    """Poll once a second until the signal fires or ``timeout`` polls have failed.

    A timeout is returned as a result, not raised; the caller decides.
    """
    ctx = ctx or RunContext()
    signal = signal or select_signal(probe, ctx, bus_warning_after, network_host)
    ctx.note(f"waiting up to {timeout}s for boot ({signal.name})", level="verbose")

    attempts = 0
    output = ""
    while True:
        attempts += 1
        done, output = signal.check(probe, attempts)
        if done:
            return BootResult(BootState.DONE, signal.name, attempts, output)
        if attempts >= timeout:
            return BootResult(BootState.TIMED_OUT, signal.name, attempts, output)
        sleep(1)
