"""
Pipeline runner: executes plan stages in order, persisting progress.

For each stage the runner checks that its prerequisites have succeeded,
runs its action with retry and exponential backoff (retrying only errors
that can go away by themselves), then polls its readiness checks until they
pass or their timeout expires. Every transition is written to the run
state before moving on, so a run that stops for any reason resumes at the
first stage that has not succeeded.
"""

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from adlab.exceptions import (
    AdlabError,
    RemoteExecutionError,
    RetryableError,
    StageDependencyError,
    StageFailedError,
)
from adlab.models.lab import LabDefinition
from adlab.pipeline.context import StageContext
from adlab.pipeline.plan import Plan, Stage, build_plan
from adlab.pipeline.readiness import ReadinessCheck
from adlab.pipeline.state import RunState, StageStatus
from adlab.remote import Connections
from adlab.util.files import run_dir_name, write_text
from adlab.util.hashing import sha256_file, short_digest
from adlab.util.redact import redact_sensitive
from adlab.util.retry import RetryStrategy, call_with_retry, is_retryable_error, wait_until
from adlab.util.templates import TemplateLoader
from adlab.workspace import Workspace

logger = logging.getLogger(__name__)


@dataclass
class StageOutcome:
    """What happened to one stage during a run."""

    stage: Stage
    status: StageStatus
    elapsed: float = 0.0
    note: str | None = None
    scripts: list[tuple[str, str]] = field(default_factory=list)  # dry runs: (target, script)


@dataclass
class RunReport:
    outcomes: list[StageOutcome] = field(default_factory=list)
    dry_run: bool = False
    lab_changed: bool = False

    def count(self, status: StageStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)


class PipelineRunner:
    """Runs a lab's plan against the host and its guests."""

    def __init__(
        self,
        workspace: Workspace,
        lab: LabDefinition,
        plan: Plan | None = None,
        connections: Connections | None = None,
        dry_run: bool = False,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        on_stage: Callable[[StageOutcome], None] | None = None,
    ):
        self.workspace = workspace
        self.lab = lab
        self.config = workspace.load_config()
        self.plan = plan or build_plan(lab)
        self.dry_run = dry_run
        self.connections = connections or Connections(lab, self.config["transport"], dry_run=dry_run)
        self.state = RunState.load(workspace.state_file(lab.name), lab.name)
        self.ctx = StageContext(
            lab=lab,
            workspace=workspace,
            connections=self.connections,
            loader=TemplateLoader(workspace.root),
            config=self.config,
            dry_run=dry_run,
        )
        self.sleep = sleep
        self.clock = clock
        self.on_stage = on_stage
        self._completed: set[str] = set()

    # -- lab file tracking -------------------------------------------------

    def _lab_digest(self) -> str | None:
        if not self.workspace.lab_file.exists():
            return None
        return sha256_file(self.workspace.lab_file)

    def lab_changed(self) -> bool:
        """True when lab.yaml differs from the one the recorded progress was made with."""
        current = self._lab_digest()
        recorded = self.state.lab_sha256
        return bool(recorded and current and recorded != current)

    # -- running -----------------------------------------------------------

    def run(
        self,
        only: list[str] | None = None,
        start_at: str | None = None,
        force: bool = False,
    ) -> RunReport:
        """
        Run the selected stages.

        Args:
            only: Run just these stage ids
            start_at: Skip every stage ordered before this one
            force: Re-run stages that already succeeded

        Returns:
            RunReport with one outcome per considered stage

        Raises:
            StageDependencyError: If a stage's prerequisites have not succeeded
            StageFailedError: If a stage action failed after its retries
            ReadinessTimeoutError: If a readiness check never passed
        """
        stages = self.plan.select(only=only, start_at=start_at)
        report = RunReport(dry_run=self.dry_run, lab_changed=self.lab_changed())
        if report.lab_changed:
            logger.warning(
                "lab.yaml changed since stage progress was recorded (was %s); "
                "completed stages will not be re-run unless reset or forced",
                short_digest(self.state.lab_sha256 or ""),
            )

        if not self.dry_run:
            self.state.lab_sha256 = self._lab_digest()
            self.state.save()

        started = datetime.now()
        try:
            for stage in stages:
                if self.state.is_done(stage.id) and not force:
                    outcome = StageOutcome(stage, StageStatus.SKIPPED, note="already succeeded")
                    logger.debug("Skipping %s (already succeeded)", stage.id)
                else:
                    self._check_requirements(stage)
                    outcome = self.run_stage(stage)
                report.outcomes.append(outcome)
                if self.on_stage is not None:
                    self.on_stage(outcome)
        finally:
            if not self.dry_run:
                self._write_run_record(started, report)

        return report

    def _satisfied(self, stage_id: str) -> bool:
        return stage_id in self._completed or self.state.is_done(stage_id)

    def _check_requirements(self, stage: Stage) -> None:
        missing = [dep for dep in stage.requires if not self._satisfied(dep)]
        if missing:
            raise StageDependencyError(stage.id, missing)

    def _retry_params(self) -> dict:
        return RetryStrategy.apply(self.config["retry"]["strategy"])

    def _on_retry(self, stage: Stage):
        def log_retry(error: Exception, attempt: int, max_attempts: int) -> None:
            logger.warning(
                "%s failed (attempt %d/%d), retrying: %s",
                stage.id,
                attempt,
                max_attempts,
                self._redact(str(error)),
            )

        return log_retry

    def _redact(self, text: str) -> str:
        return redact_sensitive(text, self.connections.known_secrets())

    def run_stage(self, stage: Stage) -> StageOutcome:
        """Run one stage's action and readiness checks, recording each transition."""
        logger.info("%s: %s", stage.id, stage.description)
        if not self.dry_run:
            self.state.mark(stage.id, StageStatus.RUNNING)

        journal_start = len(self.connections.journal)
        start = self.clock()
        try:
            if stage.action is not None:
                call_with_retry(
                    lambda: stage.action(self.ctx),
                    is_retryable=is_retryable_error,
                    on_retry=self._on_retry(stage),
                    sleep=self.sleep,
                    **self._retry_params(),
                )
            if not self.dry_run:
                for check in stage.waits:
                    self.wait_for(check)
        except Exception as e:
            cause = e.original_error if isinstance(e, RetryableError) else e
            message = self._redact(str(cause))
            logger.error("%s failed: %s", stage.id, message)
            if not self.dry_run:
                self.state.mark(stage.id, StageStatus.FAILED, error=message)
            if isinstance(cause, AdlabError) and not isinstance(cause, RemoteExecutionError):
                raise cause
            raise StageFailedError(stage.id, cause) from e

        elapsed = self.clock() - start
        if not self.dry_run:
            self.state.mark(stage.id, StageStatus.SUCCEEDED)
        self._completed.add(stage.id)
        return StageOutcome(
            stage,
            StageStatus.SUCCEEDED,
            elapsed=elapsed,
            scripts=list(self.connections.journal[journal_start:]),
        )

    def wait_for(self, check: ReadinessCheck) -> float:
        """Poll a readiness check with bounded backoff and its kind's timeout."""
        polling = self.config["polling"]
        timeouts = polling["timeouts"]
        timeout = float(timeouts.get(check.kind, timeouts["default"]))
        logger.info("Waiting up to %.0fs for %s", timeout, check.description)
        elapsed = wait_until(
            lambda: check.probe(self.connections),
            check.description,
            timeout=timeout,
            initial_delay=float(polling["initial_delay"]),
            backoff_factor=float(polling["backoff_factor"]),
            max_delay=float(polling["max_delay"]),
            clock=self.clock,
            sleep=self.sleep,
        )
        logger.info("Ready after %.0fs: %s", elapsed, check.description)
        return elapsed

    def _write_run_record(self, started: datetime, report: RunReport) -> None:
        record = {
            "lab": self.lab.name,
            "lab_sha256": self.state.lab_sha256,
            "started_at": started.isoformat(timespec="seconds"),
            "finished_at": datetime.now().isoformat(timespec="seconds"),
            "stages": [
                {
                    "id": o.stage.id,
                    "status": o.status.value,
                    "elapsed": round(o.elapsed, 1),
                    "note": o.note,
                }
                for o in report.outcomes
            ],
            "metadata": self.ctx.metadata,
        }
        path = self.workspace.root / "runs" / run_dir_name(started) / "run.json"
        write_text(path, json.dumps(record, indent=2) + "\n")
        logger.debug("Run record written to %s", path)
