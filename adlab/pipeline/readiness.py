"""
Typed readiness checks.

A check answers one question about the lab ("is DC02 visible as a domain
controller from DC01?") with a single short probe. The runner polls checks
with bounded exponential backoff and a timeout looked up by ``kind``, so a
stuck prerequisite fails the stage instead of hanging the run.

Probes return False when the condition is not met yet. Transport failures
raise RemoteExecutionError, which the poller also treats as "not yet";
anything else (a missing secret, an unknown machine) stops the wait.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import ClassVar

from adlab.remote import Connections, CredentialContext
from adlab.unattend import SETUP_MARKER
from adlab.util.powershell import quote

PROBE_TIMEOUT = 120


class ReadinessCheck(ABC):
    """Abstract base class for readiness checks."""

    kind: ClassVar[str] = "default"

    @property
    @abstractmethod
    def description(self) -> str:
        pass

    @abstractmethod
    def probe(self, connections: Connections) -> bool:
        """
        Evaluate the condition once.

        Returns:
            True when the condition holds
        """
        pass

    def __str__(self) -> str:
        return self.description


def _guest_says(
    connections: Connections,
    machine: str,
    context: CredentialContext,
    script: str,
    marker: str,
) -> bool:
    result = connections.guest(machine, context).run_ps(script, timeout=PROBE_TIMEOUT)
    return result.ok and marker in result.stdout


@dataclass
class VmState(ReadinessCheck):
    """The VM is in the given Hyper-V state."""

    machine: str
    state: str = "Running"

    kind: ClassVar[str] = "vm_running"

    @property
    def description(self) -> str:
        return f"VM {self.machine} is {self.state}"

    def probe(self, connections: Connections) -> bool:
        script = f"(Get-VM -Name {quote(self.machine)} -ErrorAction Stop).State"
        result = connections.host().run_ps(script, timeout=PROBE_TIMEOUT)
        return result.ok and result.stdout.strip().lower() == self.state.lower()


class VmRunning(VmState):
    """The VM is running (state defaults to Running)."""


@dataclass
class GuestResponds(ReadinessCheck):
    """Unattended setup finished and the guest accepts remote commands."""

    machine: str
    context: CredentialContext = CredentialContext.LOCAL

    kind: ClassVar[str] = "guest_responds"

    @property
    def description(self) -> str:
        return f"{self.machine} finished setup and responds ({self.context.value} credentials)"

    def probe(self, connections: Connections) -> bool:
        script = f"if (Test-Path -LiteralPath {quote(SETUP_MARKER)}) {{ 'ADLAB_READY' }}"
        return _guest_says(connections, self.machine, self.context, script, "ADLAB_READY")


@dataclass
class DomainServicesReady(ReadinessCheck):
    """Active Directory answers queries on a domain controller."""

    machine: str

    kind: ClassVar[str] = "domain_ready"

    @property
    def description(self) -> str:
        return f"Active Directory answers on {self.machine}"

    def probe(self, connections: Connections) -> bool:
        script = (
            "Import-Module ActiveDirectory -ErrorAction Stop\n"
            "Get-ADDomain -Server localhost -ErrorAction Stop | Out-Null\n"
            "'AD_READY'"
        )
        return _guest_says(connections, self.machine, CredentialContext.DOMAIN, script, "AD_READY")


@dataclass
class ServiceRunning(ReadinessCheck):
    """A Windows service is running on a machine."""

    machine: str
    service: str
    context: CredentialContext = CredentialContext.DOMAIN

    kind: ClassVar[str] = "service_running"

    @property
    def description(self) -> str:
        return f"service {self.service} running on {self.machine}"

    def probe(self, connections: Connections) -> bool:
        script = (
            f"if ((Get-Service -Name {quote(self.service)} -ErrorAction Stop).Status -eq 'Running') "
            "{ 'SERVICE_RUNNING' }"
        )
        return _guest_says(connections, self.machine, self.context, script, "SERVICE_RUNNING")


@dataclass
class DomainControllerRegistered(ReadinessCheck):
    """``dc`` is listed as a domain controller when asked from ``observer``."""

    observer: str
    dc: str

    kind: ClassVar[str] = "dc_registered"

    @property
    def description(self) -> str:
        return f"{self.dc} registered as a domain controller (seen from {self.observer})"

    def probe(self, connections: Connections) -> bool:
        script = (
            "Import-Module ActiveDirectory -ErrorAction Stop\n"
            f"Get-ADDomainController -Identity {quote(self.dc)} -Server localhost -ErrorAction Stop"
            " | Out-Null\n"
            "'DC_REGISTERED'"
        )
        return _guest_says(
            connections, self.observer, CredentialContext.DOMAIN, script, "DC_REGISTERED"
        )


@dataclass
class GroupMembershipReplicated(ReadinessCheck):
    """``member`` appears in ``group`` in the directory copy held by ``machine``."""

    machine: str
    group: str
    member: str

    kind: ClassVar[str] = "group_replicated"

    @property
    def description(self) -> str:
        return f"{self.member} in '{self.group}' replicated to {self.machine}"

    def probe(self, connections: Connections) -> bool:
        script = (
            "Import-Module ActiveDirectory -ErrorAction Stop\n"
            f"$members = Get-ADGroupMember -Identity {quote(self.group)} -Server localhost"
            " -ErrorAction Stop\n"
            f"if ($members | Where-Object {{ $_.Name -eq {quote(self.member)} }}) {{ 'MEMBER_PRESENT' }}"
        )
        return _guest_says(
            connections, self.machine, CredentialContext.DOMAIN, script, "MEMBER_PRESENT"
        )


@dataclass
class DomainMember(ReadinessCheck):
    """The machine rebooted into the domain and accepts domain credentials."""

    machine: str
    domain: str

    kind: ClassVar[str] = "domain_member"

    @property
    def description(self) -> str:
        return f"{self.machine} is a member of {self.domain}"

    def probe(self, connections: Connections) -> bool:
        script = (
            "$cs = Get-CimInstance Win32_ComputerSystem\n"
            f"if ($cs.PartOfDomain -and $cs.Domain -eq {quote(self.domain)}) {{ 'DOMAIN_MEMBER' }}"
        )
        return _guest_says(
            connections, self.machine, CredentialContext.DOMAIN, script, "DOMAIN_MEMBER"
        )


@dataclass
class DomainControllersHealthy(ReadinessCheck):
    """At least ``expected`` DCs are registered and each answers AD queries."""

    observer: str
    expected: int = 2

    kind: ClassVar[str] = "dc_health"

    @property
    def description(self) -> str:
        return f"{self.expected} domain controllers healthy (seen from {self.observer})"

    def probe(self, connections: Connections) -> bool:
        script = (
            "Import-Module ActiveDirectory -ErrorAction Stop\n"
            "$healthy = 0\n"
            "foreach ($dc in Get-ADDomainController -Filter * -Server localhost) {\n"
            "    try { Get-ADDomain -Server $dc.HostName -ErrorAction Stop | Out-Null; $healthy++ }\n"
            "    catch { Write-Output \"UNHEALTHY $($dc.Name)\" }\n"
            "}\n"
            "Write-Output \"HEALTHY_COUNT=$healthy\""
        )
        result = connections.guest(self.observer, CredentialContext.DOMAIN).run_ps(
            script, timeout=PROBE_TIMEOUT
        )
        if not result.ok:
            return False
        for line in result.stdout.splitlines():
            if line.startswith("HEALTHY_COUNT="):
                return int(line.split("=", 1)[1]) >= self.expected
        return False
