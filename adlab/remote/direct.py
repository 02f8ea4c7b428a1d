"""
Executor reaching guests through PowerShell Direct.

PowerShell Direct runs a script block inside a VM over the VMBus, so it
works before the guest has any network configuration. The host executor
carries the call; the guest script travels base64-encoded so it needs no
quoting.
"""

from collections.abc import Iterable

from adlab.remote.base import CommandResult, Executor
from adlab.util import powershell

WRAPPER = """\
$ErrorActionPreference = 'Stop'
{credential}
$block = [ScriptBlock]::Create([Text.Encoding]::UTF8.GetString([Convert]::FromBase64String('{payload}')))
Invoke-Command -VMName {vm_name} -Credential $cred -ScriptBlock $block
"""


class PowerShellDirectExecutor(Executor):
    """Runs scripts in a guest with Invoke-Command -VMName."""

    name = "powershell_direct"

    def __init__(
        self,
        host: Executor,
        vm_name: str,
        username: str,
        password: str,
        secrets: Iterable[str] = (),
    ):
        super().__init__(vm_name, [password, *secrets])
        self.host = host
        self.vm_name = vm_name
        self.username = username
        self.password = password

    def wrap(self, script: str) -> str:
        """Build the host-side script that runs ``script`` inside the VM."""
        return WRAPPER.format(
            credential=powershell.credential(self.username, self.password),
            payload=powershell.base64_utf8(script),
            vm_name=powershell.quote(self.vm_name),
        )

    def run_ps(self, script: str, timeout: float | None = None) -> CommandResult:
        self._log_script(script)
        return self.host.run_ps(self.wrap(script), timeout=timeout)

    def is_available(self) -> bool:
        return self.host.is_available()

    def describe(self) -> str:
        return f"{self.name}:{self.vm_name} as {self.username}"
