"""
Per-machine installation media.

The answer file is rendered and validated locally, a redacted copy is kept
in the workspace under ``unattend/``, and the host authors a bootable ISO
from the source image with the answer file added at its root.
"""

import logging

from adlab.models.lab import LabDefinition, MachineSpec
from adlab.pipeline.context import StageContext
from adlab.unattend import render_validated
from adlab.util import powershell
from adlab.util.files import write_text
from adlab.util.hashing import sha256_string, short_digest
from adlab.util.redact import redact_sensitive

logger = logging.getLogger(__name__)


def media_iso_path(lab: LabDefinition, machine: MachineSpec) -> str:
    """Where the machine's ISO is written on the host."""
    return lab.host.media_path.rstrip("\\/") + f"\\{machine.name}.iso"


def volume_label(machine: MachineSpec) -> str:
    # ISO9660 volume labels are short upper-case identifiers
    return f"ADLAB_{machine.name}"[:32].upper()


def build_media(ctx: StageContext, machine: MachineSpec) -> str:
    """
    Render the answer file and build the machine's ISO on the host.

    Returns:
        sha256 of the answer file that went into the ISO
    """
    password = ctx.password(ctx.lab.local_admin)
    xml = render_validated(ctx.lab, machine, ctx.loader, admin_password=password)
    digest = sha256_string(xml)

    local_copy = ctx.workspace.root / "unattend" / f"{machine.name}.xml"
    write_text(local_copy, redact_sensitive(xml, [password]))
    logger.info(
        "Answer file for %s written to %s (sha256 %s)",
        machine.name,
        local_copy,
        short_digest(digest),
    )

    output_iso = media_iso_path(ctx.lab, machine)
    ctx.run_host(
        "powershell/host/build_media.ps1.j2",
        machine=machine,
        image=ctx.lab.images[machine.image],
        staging_path=ctx.lab.host.effective_staging_path,
        output_iso=output_iso,
        unattend_b64=powershell.base64_utf8(xml),
        volume_label=volume_label(machine),
    )
    ctx.metadata.setdefault("media", {})[machine.name] = {
        "iso": output_iso,
        "unattend_sha256": digest,
    }
    return digest
