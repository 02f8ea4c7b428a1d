"""
Tests for custom exceptions and their CLI formatting.
"""

from adlab.exceptions import (
    AdlabError,
    ExecutorNotAvailableError,
    InvalidConfigError,
    LabValidationError,
    MissingSecretError,
    PlanError,
    ReadinessTimeoutError,
    RemoteCommandError,
    RemoteExecutionError,
    StageDependencyError,
    StageFailedError,
    UnattendValidationError,
    UnknownStageError,
    WorkspaceAlreadyExistsError,
    WorkspaceNotFoundError,
    format_error_for_cli,
)


class TestCustomExceptions:
    """Tests for custom exception classes."""

    def test_base(self):
        error = AdlabError("Test error")
        assert str(error) == "Test error"
        assert error.suggestion is None

    def test_base_with_suggestion(self):
        error = AdlabError("Test error", "Try this")
        assert str(error) == "Test error\n\nSuggestion: Try this"

    def test_workspace_not_found(self):
        error = WorkspaceNotFoundError("/some/path")
        assert "/some/path" in error.message
        assert "adlab init" in error.suggestion

    def test_workspace_exists(self):
        error = WorkspaceAlreadyExistsError("lab")
        assert "rm lab/adlab.yaml" in error.suggestion

    def test_invalid_config(self):
        assert "Invalid configuration file: bad" == InvalidConfigError("bad").message

    def test_missing_secret(self):
        error = MissingSecretError("ADLAB_ADMIN_PASSWORD", "account Administrator")
        assert error.message == (
            "Environment variable 'ADLAB_ADMIN_PASSWORD' is not set (needed for account Administrator)"
        )
        assert "export ADLAB_ADMIN_PASSWORD=" in error.suggestion

    def test_lab_validation_lists_errors(self):
        error = LabValidationError(["first", "second"], "lab.yaml")
        assert error.errors == ["first", "second"]
        assert "lab.yaml" in error.message
        assert "  - second" in error.message

    def test_unattend_validation(self):
        error = UnattendValidationError("DC01", ["missing pass"])
        assert "DC01" in error.message
        assert "--with-templates" in error.suggestion

    def test_remote_command(self):
        error = RemoteCommandError("host", 5, "  access denied\n")
        assert isinstance(error, RemoteExecutionError)
        assert error.message == "Command on host failed with exit code 5: access denied"

    def test_executor_not_available_is_remote(self):
        assert isinstance(ExecutorNotAvailableError("host", "missing"), RemoteExecutionError)

    def test_plan_errors(self):
        assert PlanError("cycle").message == "Invalid provisioning plan: cycle"
        error = UnknownStageError("nope", ["a", "b"])
        assert error.suggestion == "List stages with:\n  adlab plan"

    def test_stage_dependency(self):
        error = StageDependencyError("b", ["a"])
        assert error.missing == ["a"]
        assert "adlab status" in error.suggestion

    def test_readiness_timeout(self):
        error = ReadinessTimeoutError("DC01 responds", 300, "refused")
        assert error.message == "Timed out after 300s waiting for: DC01 responds (last error: refused)"
        assert "polling.timeouts" in error.suggestion

    def test_stage_failed(self):
        cause = RemoteExecutionError("gone")
        error = StageFailedError("start-vm:DC01", cause)
        assert error.cause is cause
        assert "adlab run --only start-vm:DC01 --force" in error.suggestion


class TestFormatErrorForCli:
    def test_adlab_error(self):
        output = format_error_for_cli(AdlabError("Boom", "Fix it"))
        assert "[red]Error:[/red] Boom" in output
        assert "[yellow]Fix it[/yellow]" in output

    def test_adlab_error_without_suggestion(self):
        assert format_error_for_cli(AdlabError("Boom")) == "[red]Error:[/red] Boom"

    def test_plain_exception(self):
        assert format_error_for_cli(ValueError("bad")) == "[red]Error:[/red] bad"
