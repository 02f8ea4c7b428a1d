"""
Custom exceptions for adlab with helpful error messages.
"""


class AdlabError(Exception):
    """Base exception for adlab errors."""

    def __init__(self, message: str, suggestion: str = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(self.message)

    def __str__(self):
        if self.suggestion:
            return f"{self.message}\n\nSuggestion: {self.suggestion}"
        return self.message


class WorkspaceError(AdlabError):
    """Errors related to workspace management."""

    pass


class WorkspaceNotFoundError(WorkspaceError):
    """Workspace not found or not initialized."""

    def __init__(self, path: str = None):
        message = "Not in an adlab workspace."
        if path:
            message = f"No adlab workspace found at: {path}"

        suggestion = (
            "Initialize a new workspace with:\n"
            "  adlab init <workspace-dir>\n\n"
            "Or navigate to an existing workspace directory."
        )
        super().__init__(message, suggestion)


class WorkspaceAlreadyExistsError(WorkspaceError):
    """Workspace already exists at target location."""

    def __init__(self, path: str):
        message = f"Workspace already exists at: {path}"
        suggestion = (
            "Choose a different directory or remove the existing configuration:\n"
            f"  rm {path}/adlab.yaml"
        )
        super().__init__(message, suggestion)


class ConfigurationError(AdlabError):
    """Configuration file errors."""

    pass


class InvalidConfigError(ConfigurationError):
    """Configuration file is invalid."""

    def __init__(self, error_details: str):
        message = f"Invalid configuration file: {error_details}"

        suggestion = (
            "Fix the adlab.yaml file.\n"
            "You can regenerate the default configuration:\n"
            "  mv adlab.yaml adlab.yaml.backup\n"
            "  adlab init .\n\n"
            "Then merge your settings back from the backup."
        )
        super().__init__(message, suggestion)


class MissingSecretError(ConfigurationError):
    """A password environment variable referenced by the lab is not set."""

    def __init__(self, env_var: str, purpose: str = None):
        message = f"Environment variable '{env_var}' is not set"
        if purpose:
            message += f" (needed for {purpose})"

        suggestion = (
            "Secrets are never stored in lab.yaml. Export the variable before running:\n"
            f"  export {env_var}=<password>        # Linux/macOS\n"
            f"  $env:{env_var} = '<password>'      # PowerShell"
        )
        super().__init__(message, suggestion)


class LabValidationError(AdlabError):
    """Lab definition failed schema or reference validation."""

    def __init__(self, errors: list[str], file_path: str = None):
        self.errors = errors
        error_list = "\n  - ".join(errors)
        message = f"Lab validation failed with {len(errors)} error(s):\n  - {error_list}"

        if file_path:
            message = f"Lab validation failed for {file_path}:\n  - {error_list}"

        suggestion = (
            "Fix the validation errors in your lab definition.\n"
            "Common issues:\n"
            "  - Missing required fields (schema_version, name, domain, machines)\n"
            "  - Machines referencing an undefined image or switch\n"
            "  - More or fewer than one primary_dc\n\n"
            "Re-check with:\n"
            "  adlab validate"
        )
        super().__init__(message, suggestion)


class MediaError(AdlabError):
    """Errors while rendering answer files or building installation media."""

    pass


class UnattendValidationError(MediaError):
    """Rendered answer file is not a valid unattend document."""

    def __init__(self, machine: str, errors: list[str]):
        error_list = "\n  - ".join(errors)
        message = f"Answer file for {machine} is invalid:\n  - {error_list}"
        suggestion = (
            "If you customized templates/unattend/autounattend.xml.j2, compare it\n"
            "with the default template:\n"
            "  adlab init <dir> --with-templates"
        )
        super().__init__(message, suggestion)


class RemoteExecutionError(AdlabError):
    """Errors while running PowerShell on the host or in a guest."""

    pass


class ExecutorNotAvailableError(RemoteExecutionError):
    """The configured transport cannot be used on this machine."""

    def __init__(self, executor_name: str, reason: str):
        message = f"Executor '{executor_name}' is not available: {reason}"
        suggestion = (
            "adlab must run on the Hyper-V host with PowerShell available.\n"
            "Check transport settings in adlab.yaml:\n"
            "  transport:\n"
            "    host_shell: powershell.exe\n"
            "    guest: powershell_direct"
        )
        super().__init__(message, suggestion)


class RemoteCommandError(RemoteExecutionError):
    """A remote PowerShell script returned a non-zero status."""

    def __init__(self, target: str, status_code: int, stderr: str = ""):
        self.target = target
        self.status_code = status_code
        self.stderr = stderr
        message = f"Command on {target} failed with exit code {status_code}"
        if stderr:
            message += f": {stderr.strip()}"
        super().__init__(message)


class PipelineError(AdlabError):
    """Errors raised by the provisioning pipeline."""

    pass


class PlanError(PipelineError):
    """The stage plan is inconsistent (unknown dependency or cycle)."""

    def __init__(self, details: str):
        message = f"Invalid provisioning plan: {details}"
        super().__init__(message)


class UnknownStageError(PipelineError):
    """A stage id given on the command line does not exist."""

    def __init__(self, stage_id: str, available: list[str] = None):
        message = f"Unknown stage: {stage_id}"
        suggestion = "List stages with:\n  adlab plan"
        if available:
            close = [s for s in available if stage_id.split(":")[0] in s][:5]
            if close:
                suggestion = "Did you mean one of:\n  - " + "\n  - ".join(close)
        super().__init__(message, suggestion)


class StageDependencyError(PipelineError):
    """A stage was requested before its prerequisites succeeded."""

    def __init__(self, stage_id: str, missing: list[str]):
        self.stage_id = stage_id
        self.missing = missing
        missing_list = "\n  - ".join(missing)
        message = f"Stage '{stage_id}' cannot start; unfinished prerequisites:\n  - {missing_list}"
        suggestion = (
            "Run the prerequisites first, or run the whole plan:\n"
            "  adlab run\n\n"
            "Check progress with:\n"
            "  adlab status"
        )
        super().__init__(message, suggestion)


class ReadinessTimeoutError(PipelineError):
    """A readiness check did not become true within its timeout."""

    def __init__(self, description: str, timeout: float, last_error: str = None):
        self.description = description
        self.timeout = timeout
        self.last_error = last_error
        message = f"Timed out after {timeout:.0f}s waiting for: {description}"
        if last_error:
            message += f" (last error: {last_error})"
        suggestion = (
            "The prerequisite never converged. Check the VM console in Hyper-V Manager,\n"
            "then resume with:\n"
            "  adlab run\n\n"
            "Timeouts can be raised under polling.timeouts in adlab.yaml."
        )
        super().__init__(message, suggestion)


class StageFailedError(PipelineError):
    """A stage action failed after all retries."""

    def __init__(self, stage_id: str, cause: Exception):
        self.stage_id = stage_id
        self.cause = cause
        message = f"Stage '{stage_id}' failed: {cause}"
        suggestion = (
            "Fix the cause and resume; completed stages are skipped:\n"
            "  adlab run\n\n"
            "To re-run only this stage:\n"
            f"  adlab run --only {stage_id} --force"
        )
        super().__init__(message, suggestion)


class CorruptStateError(PipelineError):
    """The run state file exists but cannot be read."""

    def __init__(self, path: str, details: str):
        self.path = path
        message = f"Run state file {path} is unreadable: {details}"
        suggestion = (
            "Recorded progress cannot be trusted. Start the record over with:\n"
            "  adlab reset\n\n"
            "Stage scripts are idempotent, so re-running finished work is safe."
        )
        super().__init__(message, suggestion)


class RetryableError(AdlabError):
    """Error that should be retried."""

    def __init__(self, original_error: Exception, attempt: int, max_attempts: int):
        self.original_error = original_error
        self.attempt = attempt
        self.max_attempts = max_attempts

        message = f"Operation failed (attempt {attempt}/{max_attempts}): " f"{str(original_error)}"
        super().__init__(message)


def format_error_for_cli(error: Exception) -> str:
    """
    Format an exception for CLI display with helpful information.

    Args:
        error: The exception to format

    Returns:
        Formatted error message string
    """
    if isinstance(error, AdlabError):
        output = f"[red]Error:[/red] {error.message}"
        if error.suggestion:
            output += f"\n\n[yellow]{error.suggestion}[/yellow]"
        return output
    else:
        return f"[red]Error:[/red] {str(error)}"
