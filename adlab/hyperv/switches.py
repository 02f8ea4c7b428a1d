"""
Virtual switches.
"""

import logging

from adlab.models.lab import SwitchSpec
from adlab.pipeline.context import StageContext

logger = logging.getLogger(__name__)


def create_switch(ctx: StageContext, switch: SwitchSpec) -> None:
    """Create a switch (and its NAT network) unless it already exists."""
    logger.info("Ensuring virtual switch %s (%s)", switch.name, switch.type.value)
    ctx.run_host("powershell/host/new_switch.ps1.j2", switch=switch)
