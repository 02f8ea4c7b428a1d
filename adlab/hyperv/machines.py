"""
Virtual machine lifecycle on the host.
"""

import logging

from adlab.hyperv.media import media_iso_path
from adlab.models.lab import CloneSpec, MachineSpec
from adlab.pipeline.context import StageContext

logger = logging.getLogger(__name__)


def export_path(ctx: StageContext, name: str) -> str:
    return ctx.lab.host.vm_path.rstrip("\\/") + f"\\exports\\{name}"


def create_machine(ctx: StageContext, machine: MachineSpec) -> None:
    """Create the VM with its disk and installation media unless it exists."""
    logger.info(
        "Ensuring VM %s (%d vCPU, %d GB RAM, %d GB disk)",
        machine.name,
        machine.cpus,
        machine.memory_gb,
        machine.disk_gb,
    )
    ctx.run_host(
        "powershell/host/new_vm.ps1.j2",
        machine=machine,
        vm_path=ctx.lab.host.vm_path,
        media_iso=media_iso_path(ctx.lab, machine),
    )


def start_machine(ctx: StageContext, name: str) -> None:
    logger.info("Starting %s", name)
    ctx.run_host("powershell/host/start_vm.ps1.j2", name=name)


def stop_machine(ctx: StageContext, name: str) -> None:
    logger.info("Shutting down %s", name)
    ctx.run_host("powershell/host/stop_vm.ps1.j2", name=name)


def eject_media(ctx: StageContext, name: str) -> None:
    ctx.run_host("powershell/host/eject_media.ps1.j2", name=name)


def export_machine(ctx: StageContext, name: str) -> None:
    """Export a powered-off VM so it can be imported as a clone."""
    path = export_path(ctx, name)
    logger.info("Exporting %s to %s", name, path)
    ctx.run_host("powershell/host/export_vm.ps1.j2", name=name, export_path=path)


def clear_clone_config(ctx: StageContext, name: str) -> None:
    """Remove DCCloneConfig.xml from the source DC's own disk after export."""
    ctx.run_host("powershell/host/clear_clone_config.ps1.j2", name=name)


def import_clone(ctx: StageContext, clone: CloneSpec) -> None:
    """Import the exported source as a new VM with a new id and the clone's name."""
    logger.info("Importing %s as %s", clone.source, clone.name)
    ctx.run_host(
        "powershell/host/import_clone.ps1.j2",
        clone_name=clone.name,
        source_name=clone.source,
        export_path=export_path(ctx, clone.source),
        vm_path=ctx.lab.host.vm_path,
    )
