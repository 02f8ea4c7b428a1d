"""
Domain controller cloning.

Cloning takes the supported route: the source DC joins "Cloneable Domain
Controllers", gets a DCCloneConfig.xml describing the new DC, and is then
exported and imported as a new VM. The copy finds the file at boot and
renames itself into a new domain controller.
"""

import ipaddress
import logging

from adlab.models.lab import CloneSpec
from adlab.pipeline.context import StageContext
from adlab.remote import CredentialContext

logger = logging.getLogger(__name__)

CLONEABLE_GROUP = "Cloneable Domain Controllers"


def subnet_mask(prefix_length: int) -> str:
    return str(ipaddress.ip_network(f"0.0.0.0/{prefix_length}").netmask)


def authorize_clone(ctx: StageContext, clone: CloneSpec) -> None:
    logger.info("Adding %s to '%s'", clone.source, CLONEABLE_GROUP)
    ctx.run_guest(
        clone.source,
        CredentialContext.DOMAIN,
        "powershell/guest/authorize_clone.ps1.j2",
        source=clone.source,
    )


def prepare_clone(ctx: StageContext, clone: CloneSpec) -> None:
    """Write DCCloneConfig.xml on the source with the clone's identity."""
    source = ctx.lab.machine(clone.source)
    clone_machine = ctx.lab.clone_machine()
    logger.info("Writing clone configuration for %s (%s)", clone.name, clone.ip)
    ctx.run_guest(
        source.name,
        CredentialContext.DOMAIN,
        "powershell/guest/prepare_clone.ps1.j2",
        source=source,
        clone=clone,
        subnet_mask=subnet_mask(source.prefix_length),
        dns_servers=clone_machine.dns,
    )
