"""
What a stage action receives: the lab, executors, templates and settings.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any

from adlab.models.lab import Credential, LabDefinition
from adlab.remote import CommandResult, Connections, CredentialContext
from adlab.util import powershell
from adlab.util.templates import TemplateLoader
from adlab.workspace import Workspace

logger = logging.getLogger(__name__)


@dataclass
class StageContext:
    """Shared, per-run state handed to every stage action."""

    lab: LabDefinition
    workspace: Workspace
    connections: Connections
    loader: TemplateLoader
    config: dict[str, Any]
    dry_run: bool = False
    # Facts produced by stages (e.g. answer file digests), saved with the run
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def command_timeout(self) -> float:
        return float(self.config["transport"]["command_timeout"])

    def secret(self, env_var: str, resolve) -> str:
        """
        Return a secret, or a placeholder during dry runs when it is unset.

        ``resolve`` is the zero-argument callable that raises
        MissingSecretError for real runs.
        """
        if self.dry_run and not os.environ.get(env_var):
            return f"<{env_var}>"
        return resolve()

    def password(self, credential: Credential) -> str:
        return self.secret(credential.password_env, credential.resolve_password)

    def safe_mode_password(self) -> str:
        domain = self.lab.domain
        return self.secret(domain.safe_mode_password_env, domain.resolve_safe_mode_password)

    def domain_credential(self) -> str:
        """PowerShell statement defining ``$cred`` as the domain administrator."""
        admin = self.lab.domain_admin
        return powershell.credential(admin.username, self.password(admin))

    def render(self, template: str, **variables) -> str:
        return self.loader.render(template, **variables)

    def run_host(self, template: str, **variables) -> CommandResult:
        """Render a host script and run it, raising on failure."""
        script = self.render(template, **variables)
        return self.connections.host().run_checked(script, timeout=self.command_timeout)

    def run_guest(
        self,
        machine_name: str,
        context: CredentialContext,
        template: str,
        /,
        **variables,
    ) -> CommandResult:
        """Render a guest script and run it on ``machine_name``, raising on failure."""
        script = self.render(template, **variables)
        executor = self.connections.guest(machine_name, context)
        return executor.run_checked(script, timeout=self.command_timeout)
