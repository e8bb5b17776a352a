"""
Host access seams: a root-prefixed filesystem view and a command runner.

Everything that reads /proc, /sys or /etc, and everything that runs an
external tool, goes through these two classes so the whole pipeline can be
pointed at a fake tree in tests.
"""

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 2.0


@dataclass
class CommandResult:
    """Outcome of one external command."""
    argv: Sequence[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    NOT_FOUND = 127
    TIMED_OUT = 124

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def missing(self) -> bool:
        return self.returncode == self.NOT_FOUND


class CommandRunner:
    """
    Runs external tools with a hard timeout.

    Never raises for a missing binary or a timeout: those come back as
    CommandResult with returncode 127 / 124 so callers can fail soft.
    """

    def __init__(self, timeout: float = DEFAULT_COMMAND_TIMEOUT):
        self.timeout = timeout

    def run(self, argv: Sequence[str], timeout: Optional[float] = None) -> CommandResult:
        argv = [str(a) for a in argv]
        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
            )
        except FileNotFoundError:
            logger.debug("command not found: %s", argv[0])
            return CommandResult(argv, CommandResult.NOT_FOUND, stderr="command not found")
        except subprocess.TimeoutExpired:
            logger.debug("command timed out: %s", " ".join(argv))
            return CommandResult(argv, CommandResult.TIMED_OUT, stderr="timed out")
        except OSError as e:
            logger.debug("command failed to start: %s (%s)", " ".join(argv), e)
            return CommandResult(argv, 126, stderr=str(e))

        return CommandResult(argv, proc.returncode, proc.stdout, proc.stderr)

    def output(self, argv: Sequence[str]) -> str:
        """Stripped stdout of a successful command, '' otherwise."""
        result = self.run(argv)
        return result.stdout.strip() if result.ok else ""


class HostFS:
    """Read/write view of the host filesystem rooted at `root`."""

    def __init__(self, root: Union[str, Path] = "/"):
        self.root = Path(root)

    def path(self, host_path: Union[str, Path]) -> Path:
        """Map an absolute host path into the root."""
        return self.root / str(host_path).lstrip("/")

    def exists(self, host_path: str) -> bool:
        return self.path(host_path).exists()

    def is_dir(self, host_path: str) -> bool:
        return self.path(host_path).is_dir()

    def read(self, host_path: str, default: str = "") -> str:
        """Stripped file content, or default when unreadable."""
        try:
            return self.path(host_path).read_text(errors="replace").strip()
        except OSError:
            return default

    def read_int(self, host_path: str, default: int = 0) -> int:
        value = self.read(host_path)
        try:
            return int(value)
        except ValueError:
            return default

    def listdir(self, host_path: str) -> List[str]:
        try:
            return sorted(os.listdir(self.path(host_path)))
        except OSError:
            return []

    def readlink_name(self, host_path: str) -> str:
        """Basename of a symlink target, '' if not a link."""
        try:
            return os.path.basename(os.readlink(self.path(host_path)))
        except OSError:
            return ""
