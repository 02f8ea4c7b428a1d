"""
Abstract base class for PowerShell executors.

An executor runs a PowerShell script somewhere (the Hyper-V host itself or a
guest VM) and returns its exit status and output. Everything adlab does to a
machine goes through one.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from adlab.exceptions import RemoteCommandError
from adlab.util.redact import redact_sensitive

logger = logging.getLogger(__name__)


class CredentialContext(str, Enum):
    """Which account a stage uses to reach its machine."""

    HOST = "host"  # the Hyper-V host itself, current user
    LOCAL = "local"  # guest's local Administrator
    DOMAIN = "domain"  # domain administrator


@dataclass
class CommandResult:
    """Outcome of one script execution."""

    status_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.status_code == 0


class Executor(ABC):
    """Abstract base class for executors."""

    name = "executor"

    def __init__(self, target: str, secrets: Iterable[str] = ()):
        """
        Initialize executor.

        Args:
            target: Human-readable target (machine name or "host")
            secrets: Literal values to redact from anything logged or raised
        """
        self.target = target
        self.secrets = [s for s in secrets if s]

    @abstractmethod
    def run_ps(self, script: str, timeout: float | None = None) -> CommandResult:
        """
        Run a PowerShell script and return its result.

        Args:
            script: PowerShell source
            timeout: Seconds before the call is abandoned (None = executor default)

        Returns:
            CommandResult with exit status and decoded output

        Raises:
            RemoteExecutionError: If the transport failed before the script ran
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """
        Check if the executor can be used from this machine.

        Returns:
            True if scripts can be sent, False otherwise
        """
        pass

    def describe(self) -> str:
        return f"{self.name}:{self.target}"

    def redact(self, text: str) -> str:
        return redact_sensitive(text, self.secrets)

    def run_checked(self, script: str, timeout: float | None = None) -> CommandResult:
        """
        Run a script and raise if it exits non-zero.

        Raises:
            RemoteCommandError: If the script returned a non-zero status
        """
        result = self.run_ps(script, timeout=timeout)
        if not result.ok:
            raise RemoteCommandError(self.describe(), result.status_code, self.redact(result.stderr))
        for line in result.stdout.splitlines():
            if line.strip():
                logger.info("[%s] %s", self.target, self.redact(line.strip()))
        return result

    def _log_script(self, script: str) -> None:
        logger.debug("Running on %s:\n%s", self.describe(), self.redact(script))
