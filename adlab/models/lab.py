"""Lab definition dataclasses.

A lab definition is the declarative description of everything adlab builds:
virtual switches, installation images, the domain, the machines and the
services they host. It is loaded from ``lab.yaml`` by
:mod:`adlab.definition`; nothing here talks to Hyper-V.
"""

import ipaddress
import os
from dataclasses import dataclass, field, replace
from enum import Enum

from adlab.exceptions import MissingSecretError


class MachineRole(str, Enum):
    """What a machine is in the domain."""

    PRIMARY_DC = "primary_dc"
    REPLICA_DC = "replica_dc"
    MEMBER = "member"
    WORKSTATION = "workstation"

    @property
    def is_dc(self) -> bool:
        return self in (MachineRole.PRIMARY_DC, MachineRole.REPLICA_DC)


class SwitchType(str, Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"
    PRIVATE = "private"


@dataclass
class Credential:
    """Account used to reach a machine. Only the env var name is stored."""

    username: str
    password_env: str

    def resolve_password(self) -> str:
        """Read the password from the environment.

        Raises:
            MissingSecretError: If the environment variable is not set
        """
        value = os.environ.get(self.password_env)
        if not value:
            raise MissingSecretError(self.password_env, f"account {self.username}")
        return value


@dataclass
class NatConfig:
    prefix: str  # e.g. 10.0.0.0/24
    gateway: str

    @property
    def prefix_length(self) -> int:
        return ipaddress.ip_network(self.prefix, strict=False).prefixlen


@dataclass
class SwitchSpec:
    """A Hyper-V virtual switch."""

    name: str
    type: SwitchType = SwitchType.INTERNAL
    adapter: str | None = None  # physical NIC, external switches only
    nat: NatConfig | None = None


@dataclass
class ImageSpec:
    """An installation ISO plus what to select from it."""

    id: str
    source_iso: str
    image_name: str
    product_key: str | None = None
    locale: str = "en-US"
    timezone: str = "UTC"


@dataclass
class HostSpec:
    """Paths on the Hyper-V host."""

    vm_path: str
    media_path: str
    staging_path: str | None = None

    @property
    def effective_staging_path(self) -> str:
        return self.staging_path or self.media_path.rstrip("\\/") + "\\staging"


@dataclass
class DomainSpec:
    """The Active Directory forest and its root domain."""

    fqdn: str
    netbios: str
    safe_mode_password_env: str
    forest_mode: str = "WinThreshold"
    domain_mode: str = "WinThreshold"
    organizational_units: list[str] = field(default_factory=list)
    dns_forwarders: list[str] = field(default_factory=list)
    reverse_zone: str | None = None

    @property
    def base_dn(self) -> str:
        return ",".join(f"DC={label}" for label in self.fqdn.split("."))

    def ou_dn(self, path: str) -> str:
        """Distinguished name for a slash-separated OU path ("Lab/Servers")."""
        parts = [p for p in path.split("/") if p]
        ous = ",".join(f"OU={p}" for p in reversed(parts))
        return f"{ous},{self.base_dn}" if ous else self.base_dn

    def resolve_safe_mode_password(self) -> str:
        value = os.environ.get(self.safe_mode_password_env)
        if not value:
            raise MissingSecretError(self.safe_mode_password_env, "the DSRM safe mode password")
        return value


@dataclass
class MachineSpec:
    """A virtual machine and its network identity."""

    name: str
    role: MachineRole
    image: str
    switch: str
    ip: str
    prefix_length: int = 24
    gateway: str | None = None
    dns: list[str] = field(default_factory=list)
    memory_gb: int = 2
    cpus: int = 2
    disk_gb: int = 60
    generation: int = 2
    ou: str | None = None

    @property
    def is_dc(self) -> bool:
        return self.role.is_dc


@dataclass
class DhcpScope:
    name: str
    start: str
    end: str
    subnet_mask: str
    router: str | None = None
    dns_servers: list[str] = field(default_factory=list)
    lease_days: int = 8

    @property
    def scope_id(self) -> str:
        """Network address of the scope, as DHCP cmdlets expect it."""
        net = ipaddress.ip_network(f"{self.start}/{self.subnet_mask}", strict=False)
        return str(net.network_address)


@dataclass
class DhcpSpec:
    server: str
    scope: DhcpScope
    exclusions: list[tuple[str, str]] = field(default_factory=list)


@dataclass
class FileShareSpec:
    server: str
    name: str
    path: str
    description: str = ""
    full_access: list[str] = field(default_factory=list)
    change_access: list[str] = field(default_factory=list)
    read_access: list[str] = field(default_factory=list)


@dataclass
class WsusSpec:
    server: str
    content_dir: str = "C:\\WSUS"
    products: list[str] = field(default_factory=list)
    classifications: list[str] = field(default_factory=list)
    languages: list[str] = field(default_factory=lambda: ["en"])


@dataclass
class RegistryValue:
    key: str
    value_name: str
    type: str  # String | DWord | ExpandString | MultiString | QWord
    value: str | int | list[str]


@dataclass
class GroupPolicySpec:
    name: str
    link: str | None = None  # OU path; None leaves the GPO unlinked
    comment: str = ""
    registry_values: list[RegistryValue] = field(default_factory=list)


@dataclass
class CloneSpec:
    """Clone of an existing DC made through the supported cloning workflow."""

    source: str
    name: str
    ip: str
    site: str = "Default-First-Site-Name"


@dataclass
class LabDefinition:
    """Complete lab definition."""

    name: str
    host: HostSpec
    domain: DomainSpec
    local_admin: Credential
    domain_admin: Credential
    switches: list[SwitchSpec] = field(default_factory=list)
    images: dict[str, ImageSpec] = field(default_factory=dict)
    machines: list[MachineSpec] = field(default_factory=list)
    dhcp: DhcpSpec | None = None
    file_shares: list[FileShareSpec] = field(default_factory=list)
    wsus: WsusSpec | None = None
    group_policies: list[GroupPolicySpec] = field(default_factory=list)
    clone: CloneSpec | None = None
    schema_version: int = 1

    def machine(self, name: str) -> MachineSpec:
        """Look up a machine by name (case-insensitive)."""
        for m in self.machines:
            if m.name.lower() == name.lower():
                return m
        raise KeyError(f"Unknown machine: {name}")

    def has_machine(self, name: str) -> bool:
        return any(m.name.lower() == name.lower() for m in self.machines)

    def switch(self, name: str) -> SwitchSpec:
        for s in self.switches:
            if s.name == name:
                return s
        raise KeyError(f"Unknown switch: {name}")

    def machines_by_role(self, role: MachineRole) -> list[MachineSpec]:
        return [m for m in self.machines if m.role == role]

    @property
    def primary_dc(self) -> MachineSpec:
        return self.machines_by_role(MachineRole.PRIMARY_DC)[0]

    @property
    def replica_dcs(self) -> list[MachineSpec]:
        return self.machines_by_role(MachineRole.REPLICA_DC)

    @property
    def domain_controllers(self) -> list[MachineSpec]:
        return [m for m in self.machines if m.is_dc]

    @property
    def domain_members(self) -> list[MachineSpec]:
        """Machines that join an existing domain rather than host it."""
        return [m for m in self.machines if not m.is_dc]

    def dns_servers_for(self, machine: MachineSpec) -> list[str]:
        """DNS servers a machine should use.

        Explicit ``dns`` wins. The primary DC points at itself via loopback
        with the first replica as secondary; everyone else uses the DCs.
        """
        if machine.dns:
            return list(machine.dns)
        if machine.role == MachineRole.PRIMARY_DC:
            return ["127.0.0.1"] + [dc.ip for dc in self.replica_dcs[:1]]
        if machine.role == MachineRole.REPLICA_DC:
            return [self.primary_dc.ip, "127.0.0.1"]
        return [dc.ip for dc in self.domain_controllers]

    def clone_machine(self) -> MachineSpec | None:
        """The machine the clone stages produce, derived from its source DC."""
        if self.clone is None:
            return None
        source = self.machine(self.clone.source)
        return replace(
            source,
            name=self.clone.name,
            ip=self.clone.ip,
            role=MachineRole.REPLICA_DC,
            dns=[source.ip, "127.0.0.1"],
        )
