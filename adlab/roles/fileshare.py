"""
SMB file shares.
"""

import logging

from adlab.models.lab import FileShareSpec
from adlab.pipeline.context import StageContext
from adlab.remote import CredentialContext

logger = logging.getLogger(__name__)

# Share permission -> matching NTFS right on the folder
NTFS_RIGHTS = {
    "full_access": "FullControl",
    "change_access": "Modify",
    "read_access": "ReadAndExecute",
}


def ntfs_rules(share: FileShareSpec) -> list[tuple[str, str]]:
    rules = []
    for attr, rights in NTFS_RIGHTS.items():
        for principal in getattr(share, attr):
            rules.append((principal, rights))
    return rules


def create_share(ctx: StageContext, share: FileShareSpec) -> None:
    server = ctx.lab.machine(share.server)
    logger.info("Ensuring share \\\\%s\\%s", server.name, share.name)
    ctx.run_guest(
        server.name,
        CredentialContext.DOMAIN,
        "powershell/guest/new_file_share.ps1.j2",
        machine=server,
        share=share,
        ntfs_rules=ntfs_rules(share),
    )
