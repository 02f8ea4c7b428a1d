"""
Windows Server Update Services.
"""

import logging

from adlab.models.lab import WsusSpec
from adlab.pipeline.context import StageContext
from adlab.remote import CredentialContext

logger = logging.getLogger(__name__)

CATEGORY_SYNC_TIMEOUT = 1800


def install_wsus(ctx: StageContext, wsus: WsusSpec) -> None:
    """Install WSUS, choose products and classifications, start the first sync."""
    server = ctx.lab.machine(wsus.server)
    logger.info("Configuring WSUS on %s (content in %s)", server.name, wsus.content_dir)
    ctx.run_guest(
        server.name,
        CredentialContext.DOMAIN,
        "powershell/guest/install_wsus.ps1.j2",
        machine=server,
        wsus=wsus,
        category_sync_timeout=CATEGORY_SYNC_TIMEOUT,
    )
