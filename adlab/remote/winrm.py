"""
Executor reaching guests over WinRM with pywinrm.
"""

import logging
import time
from collections.abc import Callable, Iterable

import requests
import winrm
from lxml import etree
from winrm.exceptions import WinRMError, WinRMOperationTimeoutError, WinRMTransportError

from adlab.exceptions import RemoteExecutionError
from adlab.remote.base import CommandResult, Executor
from adlab.util.powershell import encode_command

logger = logging.getLogger(__name__)

TRANSPORT_ERRORS = (
    WinRMError,
    WinRMTransportError,
    WinRMOperationTimeoutError,
    requests.exceptions.RequestException,
)

CLIXML_HEADER = "#< CLIXML"


def clean_clixml(stderr: str) -> str:
    """
    Reduce a CLIXML error stream to the error text it carries.

    powershell.exe serializes its error stream as CLIXML when stdout is not a
    console. Plain text is returned unchanged.
    """
    if not stderr.startswith(CLIXML_HEADER):
        return stderr
    body = stderr[len(CLIXML_HEADER):].strip()
    parser = etree.XMLParser(resolve_entities=False, no_network=True, load_dtd=False)
    try:
        root = etree.fromstring(body.encode("utf-8"), parser)
    except etree.XMLSyntaxError:
        return stderr
    lines = [
        (node.text or "").replace("_x000D__x000A_", "\n")
        for node in root.iter("{*}S")
        if node.get("S") == "Error"
    ]
    return "".join(lines).strip()


class WinRMExecutor(Executor):
    """
    Runs scripts in a guest through a WinRM shell.

    Output is collected one receive at a time so the overall call can be cut
    off at its deadline. A single receive is bounded by ``operation_timeout``,
    which is how far past the deadline an abandoned call can run. An
    abandoned command is terminated in the guest and its shell closed.
    """

    name = "winrm"

    def __init__(
        self,
        address: str,
        username: str,
        password: str,
        settings: dict,
        target: str | None = None,
        secrets: Iterable[str] = (),
        default_timeout: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(target or address, [password, *secrets])
        self.address = address
        self.username = username
        self.password = password
        self.settings = settings
        self.default_timeout = default_timeout
        self.clock = clock
        self._protocol: winrm.Protocol | None = None

    @property
    def endpoint(self) -> str:
        use_ssl = bool(self.settings.get("use_ssl", False))
        scheme = "https" if use_ssl else "http"
        port = int(self.settings.get("port") or (5986 if use_ssl else 5985))
        return f"{scheme}://{self.address}:{port}/wsman"

    @property
    def protocol(self) -> winrm.Protocol:
        if self._protocol is None:
            self._protocol = winrm.Protocol(
                endpoint=self.endpoint,
                transport=self.settings.get("transport", "ntlm"),
                username=self.username,
                password=self.password,
                server_cert_validation=self.settings.get("server_cert_validation", "ignore"),
                operation_timeout_sec=int(self.settings.get("operation_timeout", 60)),
                read_timeout_sec=int(self.settings.get("read_timeout", 90)),
            )
        return self._protocol

    def run_ps(self, script: str, timeout: float | None = None) -> CommandResult:
        self._log_script(script)
        timeout = timeout or self.default_timeout
        try:
            status_code, stdout, stderr = self._run_bounded(encode_command(script), timeout)
        except TRANSPORT_ERRORS as e:
            # Drop the connection so the next attempt reconnects
            self._protocol = None
            raise RemoteExecutionError(
                f"WinRM call to {self.endpoint} failed: {self.redact(str(e))}"
            ) from e

        return CommandResult(
            status_code=status_code,
            stdout=stdout.decode(errors="replace").strip(),
            stderr=clean_clixml(stderr.decode(errors="replace").strip()),
        )

    def _run_bounded(self, encoded: str, timeout: float) -> tuple[int, bytes, bytes]:
        protocol = self.protocol
        deadline = self.clock() + timeout
        shell_id = protocol.open_shell()
        command_id = None
        stdout, stderr = [], []
        try:
            command_id = protocol.run_command(
                shell_id,
                "powershell.exe",
                ["-NoProfile", "-NonInteractive", "-EncodedCommand", encoded],
            )
            while True:
                if self.clock() >= deadline:
                    raise RemoteExecutionError(
                        f"WinRM command on {self.target} did not finish within {timeout:.0f}s"
                    )
                try:
                    out, err, status_code, done = protocol.get_command_output_raw(
                        shell_id, command_id
                    )
                except WinRMOperationTimeoutError:
                    # No output during this receive; the command is still running
                    continue
                stdout.append(out)
                stderr.append(err)
                if done:
                    return status_code, b"".join(stdout), b"".join(stderr)
        finally:
            self._release(protocol, shell_id, command_id)

    def _release(self, protocol: winrm.Protocol, shell_id: str, command_id: str | None) -> None:
        try:
            if command_id is not None:
                protocol.cleanup_command(shell_id, command_id)
            protocol.close_shell(shell_id)
        except TRANSPORT_ERRORS as e:
            logger.debug("Could not close WinRM shell on %s: %s", self.target, self.redact(str(e)))

    def is_available(self) -> bool:
        return bool(self.address and self.username and self.password)

    def describe(self) -> str:
        return f"{self.name}:{self.target} as {self.username}"
