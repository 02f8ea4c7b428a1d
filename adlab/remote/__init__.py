"""
PowerShell executors for the Hyper-V host and guest VMs.
"""

import logging
import os

from adlab.models.lab import Credential, LabDefinition, MachineSpec
from adlab.remote.base import CommandResult, CredentialContext, Executor
from adlab.remote.direct import PowerShellDirectExecutor
from adlab.remote.local import HostExecutor
from adlab.remote.mock import RecordingExecutor
from adlab.remote.winrm import WinRMExecutor

logger = logging.getLogger(__name__)

GUEST_TRANSPORTS = ("powershell_direct", "winrm", "mock")


def get_executor(
    transport: str,
    machine: MachineSpec,
    username: str,
    password: str,
    host: HostExecutor,
    config: dict,
    secrets: list[str] | None = None,
) -> Executor:
    """
    Factory function returning the guest executor for a transport name.

    Args:
        transport: One of "powershell_direct", "winrm" or "mock"
        machine: Target machine
        username: Account to connect as
        password: Its password
        host: Host executor (carries PowerShell Direct calls)
        config: ``transport`` section of the workspace config

    Raises:
        ValueError: If the transport is not supported
    """
    secrets = secrets or []
    transport = transport.lower()
    if transport == "powershell_direct":
        return PowerShellDirectExecutor(host, machine.name, username, password, secrets)
    if transport == "winrm":
        return WinRMExecutor(
            machine.ip,
            username,
            password,
            config.get("winrm", {}),
            target=machine.name,
            secrets=secrets,
            default_timeout=config.get("command_timeout", 3600),
        )
    if transport == "mock":
        return RecordingExecutor(machine.name, [password, *secrets])

    raise ValueError(f"Unsupported transport: {transport}. Must be one of: {list(GUEST_TRANSPORTS)}")


class Connections:
    """
    Hands out executors per (machine, credential context), creating each once.

    In dry-run mode every executor is a RecordingExecutor, so nothing leaves
    the process and the recorded scripts can be shown to the user.
    """

    def __init__(
        self,
        lab: LabDefinition,
        transport_config: dict,
        dry_run: bool = False,
        host_executor: Executor | None = None,
    ):
        self.lab = lab
        self.config = transport_config
        self.dry_run = dry_run
        self.journal: list[tuple[str, str]] = []
        self._host: Executor | None = host_executor
        self._guests: dict[tuple[str, CredentialContext], Executor] = {}

    def known_secrets(self) -> list[str]:
        """Every lab password currently set in the environment (for redaction)."""
        names = {
            self.lab.local_admin.password_env,
            self.lab.domain_admin.password_env,
            self.lab.domain.safe_mode_password_env,
        }
        return [os.environ[n] for n in sorted(names) if os.environ.get(n)]

    def host(self) -> Executor:
        if self._host is None:
            if self.dry_run:
                self._host = RecordingExecutor("host", self.known_secrets(), self.journal)
            else:
                self._host = HostExecutor(
                    shell=self.config.get("host_shell", "powershell.exe"),
                    default_timeout=self.config.get("command_timeout", 3600),
                    secrets=self.known_secrets(),
                )
        return self._host

    def credential(self, context: CredentialContext) -> Credential:
        if context == CredentialContext.DOMAIN:
            return self.lab.domain_admin
        if context == CredentialContext.LOCAL:
            return self.lab.local_admin
        raise ValueError(f"No guest credential for context {context}")

    def machine(self, name: str) -> MachineSpec:
        """Look up a lab machine, including the one produced by cloning."""
        if self.lab.has_machine(name):
            return self.lab.machine(name)
        clone = self.lab.clone_machine()
        if clone is not None and clone.name.lower() == name.lower():
            return clone
        raise KeyError(f"Unknown machine: {name}")

    def guest(self, machine_name: str, context: CredentialContext) -> Executor:
        """
        Executor for a guest under the given credential context.

        Raises:
            MissingSecretError: If the context's password is not set
        """
        context = CredentialContext(context)
        if context == CredentialContext.HOST:
            return self.host()

        machine = self.machine(machine_name)
        key = (machine.name, context)
        if key not in self._guests:
            credential = self.credential(context)
            if self.dry_run:
                password = os.environ.get(credential.password_env, "")
                executor: Executor = RecordingExecutor(machine.name, [password], self.journal)
            else:
                transport = self.config.get("guest", "powershell_direct")
                executor = get_executor(
                    transport,
                    machine,
                    credential.username,
                    credential.resolve_password(),
                    self.host(),  # type: ignore[arg-type]
                    self.config,
                    self.known_secrets(),
                )
            logger.debug("Opened %s", executor.describe())
            self._guests[key] = executor
        return self._guests[key]

    def register_guest(self, machine_name: str, context: CredentialContext, executor: Executor) -> None:
        """Use ``executor`` for a guest instead of building one from config."""
        self._guests[(self.machine(machine_name).name, CredentialContext(context))] = executor


__all__ = [
    "CommandResult",
    "Connections",
    "CredentialContext",
    "Executor",
    "HostExecutor",
    "PowerShellDirectExecutor",
    "RecordingExecutor",
    "WinRMExecutor",
    "get_executor",
]
