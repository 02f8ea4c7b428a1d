"""
Executor running PowerShell on the Hyper-V host.
"""

import shutil
import subprocess
from collections.abc import Iterable

from adlab.exceptions import ExecutorNotAvailableError, RemoteExecutionError
from adlab.remote.base import CommandResult, Executor
from adlab.util.powershell import encode_command

# Suppress progress records, which powershell.exe writes to stderr as CLIXML
PREAMBLE = "$ProgressPreference = 'SilentlyContinue'\n"


class HostExecutor(Executor):
    """Runs scripts with the local PowerShell executable."""

    name = "host"

    def __init__(
        self,
        shell: str = "powershell.exe",
        default_timeout: float = 3600,
        secrets: Iterable[str] = (),
    ):
        super().__init__("host", secrets)
        self.shell = shell
        self.default_timeout = default_timeout

    def run_ps(self, script: str, timeout: float | None = None) -> CommandResult:
        self._log_script(script)
        args = [
            self.shell,
            "-NoProfile",
            "-NonInteractive",
            "-ExecutionPolicy",
            "Bypass",
            "-EncodedCommand",
            encode_command(PREAMBLE + script),
        ]
        timeout = timeout or self.default_timeout
        try:
            completed = subprocess.run(
                args,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
            )
        except FileNotFoundError as e:
            raise ExecutorNotAvailableError(self.name, f"{self.shell} not found") from e
        except subprocess.TimeoutExpired as e:
            raise RemoteExecutionError(
                f"PowerShell on {self.target} did not finish within {timeout:.0f}s"
            ) from e

        return CommandResult(
            status_code=completed.returncode,
            stdout=(completed.stdout or "").strip(),
            stderr=(completed.stderr or "").strip(),
        )

    def is_available(self) -> bool:
        return shutil.which(self.shell) is not None
