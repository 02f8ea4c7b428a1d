"""
Group policy objects.
"""

import logging

from adlab.models.lab import GroupPolicySpec
from adlab.pipeline.context import StageContext
from adlab.remote import CredentialContext

logger = logging.getLogger(__name__)


def create_gpo(ctx: StageContext, gpo: GroupPolicySpec) -> None:
    """Create a GPO on the primary DC, set its registry values and link it."""
    domain = ctx.lab.domain
    link_dn = domain.ou_dn(gpo.link) if gpo.link else None
    logger.info("Ensuring GPO '%s'%s", gpo.name, f" linked to {link_dn}" if link_dn else "")
    ctx.run_guest(
        ctx.lab.primary_dc.name,
        CredentialContext.DOMAIN,
        "powershell/guest/new_gpo.ps1.j2",
        gpo=gpo,
        link_dn=link_dn,
    )
