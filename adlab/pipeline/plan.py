"""
The provisioning plan: every stage of a lab build expressed as data.

``build_plan`` turns a lab definition into stages with explicit
dependencies, the credentials they use, the readiness checks that must pass
before they count as done, and the node milestone they reach. Cross-machine
ordering lives in ``requires``:

- the primary DC is promoted and answering before any replica is promoted;
- every replica is registered as a DC before members join;
- cloning starts only once all DCs are healthy and the source's membership
  in "Cloneable Domain Controllers" has replicated to another DC.
"""

import heapq
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import partial
from typing import Any

from adlab.exceptions import PlanError, UnknownStageError
from adlab.hyperv import machines, media, switches
from adlab.models.lab import LabDefinition, MachineRole, MachineSpec
from adlab.pipeline.context import StageContext
from adlab.pipeline.readiness import (
    DomainControllerRegistered,
    DomainControllersHealthy,
    DomainMember,
    DomainServicesReady,
    GroupMembershipReplicated,
    GuestResponds,
    ReadinessCheck,
    ServiceRunning,
    VmRunning,
    VmState,
)
from adlab.pipeline.state import NodeState
from adlab.remote import CredentialContext
from adlab.roles import clone, dhcp, domain, fileshare, gpo, wsus

logger = logging.getLogger(__name__)

__all__ = ["CredentialContext", "Plan", "Stage", "build_plan"]


@dataclass
class Stage:
    """One unit of provisioning work."""

    id: str  # "verb:subject", e.g. "install-forest:DC01"
    node: str  # machine or switch the stage advances
    description: str
    action: Callable[[StageContext], Any] | None = None  # None: wait-only stage
    requires: list[str] = field(default_factory=list)
    credential: CredentialContext = CredentialContext.HOST
    milestone: NodeState | None = None
    waits: list[ReadinessCheck] = field(default_factory=list)

    @property
    def verb(self) -> str:
        return self.id.split(":", 1)[0]


class Plan:
    """An ordered collection of stages."""

    def __init__(self, stages: list[Stage]):
        self.stages = stages
        self._by_id: dict[str, Stage] = {}
        for stage in stages:
            if stage.id in self._by_id:
                raise PlanError(f"duplicate stage id '{stage.id}'")
            self._by_id[stage.id] = stage

    def __len__(self) -> int:
        return len(self.stages)

    def __contains__(self, stage_id: str) -> bool:
        return stage_id in self._by_id

    @property
    def ids(self) -> list[str]:
        return [s.id for s in self.stages]

    def get(self, stage_id: str) -> Stage:
        try:
            return self._by_id[stage_id]
        except KeyError:
            raise UnknownStageError(stage_id, self.ids) from None

    def ordered(self) -> list[Stage]:
        """
        Topologically sort stages, keeping declaration order among peers.

        Raises:
            PlanError: On a dependency that names no stage, or a cycle
        """
        position = {s.id: i for i, s in enumerate(self.stages)}
        indegree = {s.id: 0 for s in self.stages}
        dependents: dict[str, list[str]] = {s.id: [] for s in self.stages}

        for stage in self.stages:
            for dep in stage.requires:
                if dep not in self._by_id:
                    raise PlanError(f"stage '{stage.id}' requires unknown stage '{dep}'")
                indegree[stage.id] += 1
                dependents[dep].append(stage.id)

        ready = [(position[sid], sid) for sid, degree in indegree.items() if degree == 0]
        heapq.heapify(ready)
        result = []
        while ready:
            _, stage_id = heapq.heappop(ready)
            result.append(self._by_id[stage_id])
            for dependent in dependents[stage_id]:
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heapq.heappush(ready, (position[dependent], dependent))

        if len(result) != len(self.stages):
            stuck = sorted((sid for sid, d in indegree.items() if d > 0), key=position.get)
            raise PlanError("dependency cycle among: " + ", ".join(stuck))
        return result

    def select(self, only: list[str] | None = None, start_at: str | None = None) -> list[Stage]:
        """
        Stages to consider for a run, in execution order.

        Args:
            only: Restrict to these stage ids
            start_at: Drop every stage ordered before this one

        Raises:
            UnknownStageError: If a named stage does not exist
        """
        ordered = self.ordered()
        if start_at is not None:
            first = self.get(start_at)
            ordered = ordered[ordered.index(first) :]
        if only:
            wanted = {self.get(stage_id).id for stage_id in only}
            ordered = [s for s in ordered if s.id in wanted]
        return ordered


class _PlanBuilder:
    def __init__(self, lab: LabDefinition):
        self.lab = lab
        self.stages: list[Stage] = []

    def add(self, stage_id: str, node: str, description: str, **kwargs) -> str:
        self.stages.append(Stage(id=stage_id, node=node, description=description, **kwargs))
        return stage_id

    def ready_stage(self, machine: MachineSpec) -> str:
        """The stage after which a machine is fully part of the domain."""
        if machine.role == MachineRole.PRIMARY_DC:
            return f"create-ous:{machine.name}"
        if machine.role == MachineRole.REPLICA_DC:
            return f"configure-dns:{machine.name}"
        return f"join-domain:{machine.name}"

    def switches(self) -> None:
        for switch in self.lab.switches:
            self.add(
                f"create-switch:{switch.name}",
                switch.name,
                f"Create {switch.type.value} switch {switch.name}",
                action=partial(switches.create_switch, switch=switch),
                milestone=NodeState.CREATED,
            )

    def provision(self, machine: MachineSpec) -> None:
        """Media, VM and first boot; the guest installs in the background."""
        name = machine.name
        self.add(
            f"build-media:{name}",
            name,
            f"Build installation ISO for {name}",
            action=partial(media.build_media, machine=machine),
        )
        self.add(
            f"create-vm:{name}",
            name,
            f"Create VM {name}",
            action=partial(machines.create_machine, machine=machine),
            requires=[f"build-media:{name}", f"create-switch:{machine.switch}"],
            milestone=NodeState.CREATED,
        )
        self.add(
            f"start-vm:{name}",
            name,
            f"Start {name}",
            action=partial(machines.start_machine, name=name),
            requires=[f"create-vm:{name}"],
            milestone=NodeState.RUNNING,
            waits=[VmRunning(name)],
        )

    def installed(self, machine: MachineSpec) -> str:
        """Wait for unattended setup, then eject the media. Returns the last stage id."""
        name = machine.name
        self.add(
            f"install-os:{name}",
            name,
            f"Wait for unattended setup on {name}",
            requires=[f"start-vm:{name}"],
            credential=CredentialContext.LOCAL,
            milestone=NodeState.RESPONDING,
            waits=[GuestResponds(name)],
        )
        return self.add(
            f"eject-media:{name}",
            name,
            f"Eject installation media from {name}",
            action=partial(machines.eject_media, name=name),
            requires=[f"install-os:{name}"],
        )

    def primary(self, dc: MachineSpec) -> None:
        name = dc.name
        ejected = self.installed(dc)
        self.add(
            f"install-forest:{name}",
            name,
            f"Create forest {self.lab.domain.fqdn} on {name}",
            action=partial(domain.install_forest, machine=dc),
            requires=[ejected],
            credential=CredentialContext.LOCAL,
            milestone=NodeState.PROMOTED,
            waits=[DomainServicesReady(name), ServiceRunning(name, "DNS")],
        )
        self.add(
            f"configure-dns:{name}",
            name,
            f"Configure DNS on {name}",
            action=partial(domain.configure_dns, machine=dc),
            requires=[f"install-forest:{name}"],
            credential=CredentialContext.DOMAIN,
        )
        self.add(
            f"create-ous:{name}",
            name,
            "Create organizational units",
            action=partial(domain.create_ous, machine=dc),
            requires=[f"configure-dns:{name}"],
            credential=CredentialContext.DOMAIN,
            milestone=NodeState.CONFIGURED,
        )

    def replica(self, dc: MachineSpec) -> None:
        name = dc.name
        primary = self.lab.primary_dc
        ejected = self.installed(dc)
        self.add(
            f"install-replica-dc:{name}",
            name,
            f"Promote {name} as an additional domain controller",
            action=partial(domain.install_replica_dc, machine=dc),
            requires=[ejected, self.ready_stage(primary)],
            credential=CredentialContext.LOCAL,
            milestone=NodeState.PROMOTED,
            waits=[DomainServicesReady(name), DomainControllerRegistered(primary.name, name)],
        )
        self.add(
            f"configure-dns:{name}",
            name,
            f"Configure DNS on {name}",
            action=partial(domain.configure_dns, machine=dc),
            requires=[f"install-replica-dc:{name}"],
            credential=CredentialContext.DOMAIN,
            milestone=NodeState.CONFIGURED,
        )

    def member(self, machine: MachineSpec) -> None:
        name = machine.name
        ejected = self.installed(machine)
        dcs_ready = [self.ready_stage(dc) for dc in self.lab.domain_controllers]
        self.add(
            f"join-domain:{name}",
            name,
            f"Join {name} to {self.lab.domain.fqdn}",
            action=partial(domain.join_domain, machine=machine),
            requires=[ejected, *dcs_ready],
            credential=CredentialContext.LOCAL,
            milestone=NodeState.JOINED,
            waits=[DomainMember(name, self.lab.domain.fqdn)],
        )

    def services(self) -> None:
        lab = self.lab
        if lab.dhcp is not None:
            server = lab.machine(lab.dhcp.server)
            self.add(
                f"install-dhcp:{server.name}",
                server.name,
                f"Install and authorize DHCP on {server.name}",
                action=partial(dhcp.install_dhcp, dhcp=lab.dhcp),
                requires=[self.ready_stage(server)],
                credential=CredentialContext.DOMAIN,
                milestone=NodeState.CONFIGURED,
                waits=[ServiceRunning(server.name, "DHCPServer")],
            )
        for share in lab.file_shares:
            server = lab.machine(share.server)
            self.add(
                f"create-share:{server.name}/{share.name}",
                server.name,
                f"Create share \\\\{server.name}\\{share.name}",
                action=partial(fileshare.create_share, share=share),
                requires=[self.ready_stage(server)],
                credential=CredentialContext.DOMAIN,
                milestone=NodeState.CONFIGURED,
            )
        if lab.wsus is not None:
            server = lab.machine(lab.wsus.server)
            self.add(
                f"install-wsus:{server.name}",
                server.name,
                f"Install WSUS on {server.name}",
                action=partial(wsus.install_wsus, wsus=lab.wsus),
                requires=[self.ready_stage(server)],
                credential=CredentialContext.DOMAIN,
                milestone=NodeState.CONFIGURED,
                waits=[ServiceRunning(server.name, "WsusService")],
            )
        for policy in lab.group_policies:
            self.add(
                f"create-gpo:{policy.name}",
                lab.primary_dc.name,
                f"Create group policy '{policy.name}'",
                action=partial(gpo.create_gpo, gpo=policy),
                requires=[self.ready_stage(lab.primary_dc)],
                credential=CredentialContext.DOMAIN,
            )

    def cloning(self) -> None:
        lab = self.lab
        spec = lab.clone
        if spec is None:
            return
        source = lab.machine(spec.source)
        src, new = source.name, spec.name
        others = [dc for dc in lab.domain_controllers if dc.name != src]
        dcs = lab.domain_controllers

        self.add(
            f"verify-dcs:{src}",
            src,
            f"Confirm {len(dcs)} domain controllers are healthy",
            requires=[self.ready_stage(dc) for dc in dcs],
            credential=CredentialContext.DOMAIN,
            waits=[DomainControllersHealthy(lab.primary_dc.name, len(dcs))],
        )
        self.add(
            f"authorize-clone:{src}",
            src,
            f"Add {src} to '{clone.CLONEABLE_GROUP}'",
            action=partial(clone.authorize_clone, clone=spec),
            requires=[f"verify-dcs:{src}"],
            credential=CredentialContext.DOMAIN,
            waits=[GroupMembershipReplicated(others[0].name, clone.CLONEABLE_GROUP, src)],
        )
        self.add(
            f"prepare-clone:{src}",
            src,
            f"Write clone configuration for {new} on {src}",
            action=partial(clone.prepare_clone, clone=spec),
            requires=[f"authorize-clone:{src}"],
            credential=CredentialContext.DOMAIN,
        )
        self.add(
            f"stop-vm:{src}",
            src,
            f"Shut down {src} for export",
            action=partial(machines.stop_machine, name=src),
            requires=[f"prepare-clone:{src}"],
            waits=[VmState(src, "Off")],
        )
        self.add(
            f"export-vm:{src}",
            src,
            f"Export {src}",
            action=partial(machines.export_machine, name=src),
            requires=[f"stop-vm:{src}"],
        )
        self.add(
            f"clear-clone-config:{src}",
            src,
            f"Remove clone configuration from {src}'s own disk",
            action=partial(machines.clear_clone_config, name=src),
            requires=[f"export-vm:{src}"],
        )
        self.add(
            f"resume-vm:{src}",
            src,
            f"Restart {src}",
            action=partial(machines.start_machine, name=src),
            requires=[f"clear-clone-config:{src}"],
            waits=[VmRunning(src), DomainServicesReady(src)],
        )
        self.add(
            f"import-clone:{new}",
            new,
            f"Import {new} from the export of {src}",
            action=partial(machines.import_clone, clone=spec),
            requires=[f"resume-vm:{src}"],
            milestone=NodeState.CREATED,
        )
        self.add(
            f"start-vm:{new}",
            new,
            f"Start {new} and wait for it to become a domain controller",
            action=partial(machines.start_machine, name=new),
            requires=[f"import-clone:{new}"],
            milestone=NodeState.CLONED,
            waits=[VmRunning(new), DomainControllerRegistered(src, new)],
        )


def build_plan(lab: LabDefinition) -> Plan:
    """
    Derive the stage plan for a lab.

    All VMs are created and started early so their unattended installs run
    side by side; everything after that follows the domain's ordering rules.
    """
    builder = _PlanBuilder(lab)
    builder.switches()

    ordered_machines = (
        [lab.primary_dc]
        + lab.replica_dcs
        + [m for m in lab.machines if not m.is_dc]
    )
    for machine in ordered_machines:
        builder.provision(machine)

    builder.primary(lab.primary_dc)
    for dc in lab.replica_dcs:
        builder.replica(dc)
    for machine in lab.domain_members:
        builder.member(machine)

    builder.services()
    builder.cloning()

    plan = Plan(builder.stages)
    plan.ordered()
    logger.debug("Built plan with %d stages for lab %s", len(plan), lab.name)
    return plan
