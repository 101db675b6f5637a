"""Process isolation: namespace wrappers, rlimits and a scrubbed environment."""

import contextlib
import logging
import math
import resource
import shutil
import subprocess
from collections.abc import Callable
from enum import Enum
from pathlib import Path

from exec_relay.models.session import ResourceLimits

logger = logging.getLogger(__name__)

# Fixed per-process caps, independent of the request
MAX_OPEN_FILES = 256
MAX_FILE_BYTES = 64 * 1024 * 1024

SANDBOX_PATH = "/usr/local/bin:/usr/bin:/bin"

NAMESPACE_CHECK_TIMEOUT_SECONDS = 5.0


class IsolationMode(str, Enum):
    """How commands are wrapped before they are spawned."""

    NONE = "none"
    BWRAP = "bwrap"
    UNSHARE = "unshare"


class Isolation:
    """Builds the argv, environment and preexec hook of a sandboxed process.

    ``bwrap`` gives a read-only view of the host with a writable scratch
    directory, private /tmp, and no network. ``unshare`` separates the
    network and pid namespaces only; the host filesystem stays writable
    for the relay user. ``auto`` tries bwrap, then unshare, and is
    unavailable when neither works. Unwrapped runs need an explicit
    ``none``.
    """

    def __init__(self, strategy: str = "auto", allow_network: bool = False):
        self.strategy = strategy
        self.allow_network = allow_network
        self.error: str | None = None
        self.mode = self._resolve(strategy)

    def _resolve(self, strategy: str) -> IsolationMode:
        if strategy == "none":
            logger.warning("Isolation disabled, sandboxed programs run without namespaces")
            return IsolationMode.NONE

        if strategy == "auto":
            for mode in (IsolationMode.BWRAP, IsolationMode.UNSHARE):
                if shutil.which(mode.value) and self._namespaces_work(mode):
                    logger.info(f"Isolation auto resolved to {mode.value}")
                    return mode
            self.error = "no working isolation tool found (tried bwrap, unshare)"
            logger.error(self.error)
            return IsolationMode.NONE

        mode = IsolationMode(strategy)
        if shutil.which(mode.value):
            return mode

        self.error = f"isolation strategy '{strategy}' requested but '{strategy}' is not installed"
        logger.error(self.error)
        return IsolationMode.NONE

    def _namespaces_work(self, mode: IsolationMode) -> bool:
        """Run ``true`` under a wrapper to check namespaces are permitted here."""
        argv = self._wrap_for(mode, ["true"], Path("/tmp"))
        try:
            result = subprocess.run(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=NAMESPACE_CHECK_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"{mode.value} namespace check failed: {e}")
            return False
        if result.returncode != 0:
            logger.warning(f"{mode.value} is installed but cannot create namespaces here")
            return False
        return True

    @property
    def available(self) -> bool:
        return self.error is None

    def wrap(self, command: list[str], scratch_dir: Path) -> list[str]:
        """Wrap a command for the configured isolation mode."""
        return self._wrap_for(self.mode, command, scratch_dir)

    def _wrap_for(self, mode: IsolationMode, command: list[str], scratch_dir: Path) -> list[str]:
        scratch = str(scratch_dir)

        if mode == IsolationMode.BWRAP:
            argv = [
                shutil.which("bwrap") or "bwrap",
                "--ro-bind", "/", "/",
                "--dev", "/dev",
                "--proc", "/proc",
                "--tmpfs", "/tmp",
                "--bind", scratch, scratch,
                "--chdir", scratch,
                "--unshare-pid",
                "--unshare-ipc",
                "--unshare-uts",
                "--die-with-parent",
                "--new-session",
            ]  # fmt: skip
            if not self.allow_network:
                argv.append("--unshare-net")
            return [*argv, "--", *command]

        if mode == IsolationMode.UNSHARE:
            flags = ["--user", "--map-root-user", "--pid", "--fork", "--kill-child"]
            if not self.allow_network:
                flags.append("--net")
            return [shutil.which("unshare") or "unshare", *flags, *command]

        return list(command)

    def environment(self, scratch_dir: Path, extra: dict[str, str] | None = None) -> dict[str, str]:
        """Minimal environment; nothing leaks from the relay's own env."""
        env = {
            "PATH": SANDBOX_PATH,
            "HOME": str(scratch_dir),
            "TMPDIR": str(scratch_dir),
            "LANG": "C.UTF-8",
            "LC_ALL": "C.UTF-8",
        }
        if extra:
            env.update(extra)
        return env

    def preexec(self, limits: ResourceLimits, limit_address_space: bool = True) -> Callable[[], None]:
        """Hook run in the child before exec to apply rlimits."""
        # CPU time backs up the wall clock for busy loops
        cpu_seconds = math.ceil(limits.wall_timeout_seconds) + 1
        memory_bytes = limits.memory_bytes

        def apply() -> None:
            caps = [
                (resource.RLIMIT_CPU, cpu_seconds),
                (resource.RLIMIT_NOFILE, MAX_OPEN_FILES),
                (resource.RLIMIT_FSIZE, MAX_FILE_BYTES),
                (resource.RLIMIT_CORE, 0),
            ]
            if limit_address_space:
                caps.append((resource.RLIMIT_AS, memory_bytes))
            for limit, value in caps:
                # the platform may reject a limit or cap it below our value
                with contextlib.suppress(ValueError, OSError):
                    _, hard = resource.getrlimit(limit)
                    if hard != resource.RLIM_INFINITY:
                        value = min(value, hard)
                    resource.setrlimit(limit, (value, value))

        return apply

    def describe(self) -> dict[str, object]:
        """Capabilities for the info endpoint."""
        return {
            "strategy": self.strategy,
            "mode": self.mode.value,
            "allow_network": self.allow_network,
            "available": self.available,
            "error": self.error,
            "has_bwrap": bool(shutil.which("bwrap")),
            "has_unshare": bool(shutil.which("unshare")),
        }
