"""
Recording executor for dry runs and tests (no PowerShell is started).
"""

from collections.abc import Iterable

from adlab.remote.base import CommandResult, Executor


class RecordingExecutor(Executor):
    """
    Executor that records every script and replies with canned results.

    Replies are chosen by substring: the first rule whose text occurs in the
    script wins. A rule holds a sequence of replies consumed one per call,
    the last one repeating. A reply that is an exception instance is raised
    instead of returned, which lets tests simulate transport failures.
    """

    name = "recording"

    def __init__(
        self,
        target: str,
        secrets: Iterable[str] = (),
        journal: list[tuple[str, str]] | None = None,
    ):
        super().__init__(target, secrets)
        self.calls: list[str] = []
        self.journal = journal
        self._rules: list[tuple[str, list[CommandResult | Exception]]] = []

    def when(self, substring: str, *replies: CommandResult | Exception) -> "RecordingExecutor":
        """Register replies for scripts containing ``substring``."""
        if not replies:
            replies = (CommandResult(0),)
        self._rules.append((substring, list(replies)))
        return self

    def run_ps(self, script: str, timeout: float | None = None) -> CommandResult:
        self._log_script(script)
        self.calls.append(script)
        if self.journal is not None:
            self.journal.append((self.describe(), self.redact(script)))
        for substring, replies in self._rules:
            if substring in script:
                reply = replies.pop(0) if len(replies) > 1 else replies[0]
                if isinstance(reply, Exception):
                    raise reply
                return reply
        return CommandResult(0)

    def is_available(self) -> bool:
        return True

    @property
    def redacted_calls(self) -> list[str]:
        return [self.redact(script) for script in self.calls]
