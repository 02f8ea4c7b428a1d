"""
Forest creation, additional domain controllers, DNS, OUs and domain joins.

Promotion and join scripts reboot the guest themselves a few seconds after
returning, so the call completes cleanly and the stage's readiness checks
pick up once the machine is back.
"""

import ipaddress
import logging

from adlab.models.lab import DomainSpec, MachineRole, MachineSpec
from adlab.pipeline.context import StageContext
from adlab.remote import CredentialContext

logger = logging.getLogger(__name__)


def install_forest(ctx: StageContext, machine: MachineSpec) -> None:
    """Promote the primary DC, creating the forest."""
    logger.info("Creating forest %s on %s", ctx.lab.domain.fqdn, machine.name)
    ctx.run_guest(
        machine.name,
        CredentialContext.LOCAL,
        "powershell/guest/install_forest.ps1.j2",
        machine=machine,
        domain=ctx.lab.domain,
        safe_mode_password=ctx.safe_mode_password(),
    )


def install_replica_dc(ctx: StageContext, machine: MachineSpec) -> None:
    """Promote an additional DC, replicating from the primary."""
    source = ctx.lab.primary_dc
    logger.info("Promoting %s, replicating from %s", machine.name, source.name)
    ctx.run_guest(
        machine.name,
        CredentialContext.LOCAL,
        "powershell/guest/install_replica_dc.ps1.j2",
        machine=machine,
        domain=ctx.lab.domain,
        replication_source=source,
        domain_credential=ctx.domain_credential(),
        safe_mode_password=ctx.safe_mode_password(),
    )


def reverse_zone(domain: DomainSpec) -> tuple[str | None, str | None]:
    """(network id, zone name) for the domain's reverse lookup zone, if any."""
    if not domain.reverse_zone:
        return None, None
    network = ipaddress.ip_network(domain.reverse_zone, strict=False)
    octets = str(network.network_address).split(".")
    labels = list(reversed(octets[: max(network.prefixlen // 8, 1)]))
    return str(network), ".".join(labels) + ".in-addr.arpa"


def configure_dns(ctx: StageContext, machine: MachineSpec) -> None:
    """Set forwarders and client resolvers on a DC; the primary also gets the reverse zone."""
    network_id, zone_name = (None, None)
    if machine.role == MachineRole.PRIMARY_DC:
        network_id, zone_name = reverse_zone(ctx.lab.domain)

    ctx.run_guest(
        machine.name,
        CredentialContext.DOMAIN,
        "powershell/guest/configure_dns.ps1.j2",
        machine=machine,
        domain=ctx.lab.domain,
        dns_servers=ctx.lab.dns_servers_for(machine),
        reverse_network_id=network_id,
        reverse_zone_name=zone_name,
        register_records=True,
    )


def ou_entries(domain: DomainSpec) -> list[dict[str, str]]:
    """OUs to create, parents before children."""
    entries = []
    for path in sorted(domain.organizational_units, key=lambda p: p.count("/")):
        parts = [p for p in path.split("/") if p]
        entries.append(
            {
                "name": parts[-1],
                "dn": domain.ou_dn(path),
                "parent_dn": domain.ou_dn("/".join(parts[:-1])),
            }
        )
    return entries


def create_ous(ctx: StageContext, machine: MachineSpec) -> None:
    ous = ou_entries(ctx.lab.domain)
    logger.info("Ensuring %d organizational unit(s)", len(ous))
    ctx.run_guest(
        machine.name,
        CredentialContext.DOMAIN,
        "powershell/guest/create_ous.ps1.j2",
        domain=ctx.lab.domain,
        ous=ous,
    )


def join_domain(ctx: StageContext, machine: MachineSpec) -> None:
    """Join a member server or workstation, placing it in its OU when one is set."""
    domain = ctx.lab.domain
    ou_dn = domain.ou_dn(machine.ou) if machine.ou else None
    logger.info("Joining %s to %s", machine.name, domain.fqdn)
    ctx.run_guest(
        machine.name,
        CredentialContext.LOCAL,
        "powershell/guest/join_domain.ps1.j2",
        machine=machine,
        domain=domain,
        dns_servers=ctx.lab.dns_servers_for(machine),
        domain_credential=ctx.domain_credential(),
        ou_dn=ou_dn,
    )
