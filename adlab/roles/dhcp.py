"""
DHCP server role.
"""

import logging

from adlab.models.lab import DhcpSpec
from adlab.pipeline.context import StageContext
from adlab.remote import CredentialContext

logger = logging.getLogger(__name__)


def install_dhcp(ctx: StageContext, dhcp: DhcpSpec) -> None:
    """
    Install DHCP, authorize it in AD and create the scope.

    Scope DNS servers default to the lab's domain controllers.
    """
    lab = ctx.lab
    server = lab.machine(dhcp.server)
    dns_servers = dhcp.scope.dns_servers or [dc.ip for dc in lab.domain_controllers]
    logger.info(
        "Configuring DHCP on %s: %s-%s", server.name, dhcp.scope.start, dhcp.scope.end
    )
    ctx.run_guest(
        server.name,
        CredentialContext.DOMAIN,
        "powershell/guest/install_dhcp.ps1.j2",
        machine=server,
        domain=lab.domain,
        scope=dhcp.scope,
        scope_dns_servers=dns_servers,
        exclusions=dhcp.exclusions,
    )
