from __future__ import annotations

import logging
import subprocess
import threading

from ups_bridge.exceptions import SourceConnectionError
from ups_bridge.logging_utils import TRACE_LEVEL


def parse_upsc_output(output: str) -> dict[str, str]:
    """Parse ``upsc`` output (``variable.name: value`` per line)."""
    variables: dict[str, str] = {}
    for line in output.splitlines():
        name, sep, value = line.partition(":")
        if not sep:
            continue
        name = name.strip()
        value = value.strip()
        if name and value:
            variables[name] = value
    return variables


class NutClient:
    """Query a NUT server through the ``upsc`` command-line client.

    ``connect`` only proves the server answers (``upsc -l``); every poll is
    an independent ``upsc`` run. A failed run marks the client disconnected
    so the owner reconnects on its next cycle.
    """

    def __init__(
        self,
        host: str,
        port: int,
        ups_name: str,
        upsc_path: str = "upsc",
        timeout_s: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        # Accept "name@host" as configured for other NUT tools.
        self.ups_name = ups_name.split("@", 1)[0]
        self.upsc_path = upsc_path
        self.timeout_s = timeout_s
        self.logger = logging.getLogger(self.__class__.__name__)
        self._connected = False
        self._lock = threading.Lock()

    @property
    def server(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def target(self) -> str:
        return f"{self.ups_name}@{self.server}"

    def is_connected(self) -> bool:
        with self._lock:
            return self._connected

    def connect(self) -> bool:
        with self._lock:
            if self._connected:
                return True
        try:
            output = self._run_command([self.upsc_path, "-l", self.server])
        except SourceConnectionError as exc:
            self.logger.error("NUT connect to %s failed: %s", self.server, exc)
            return False
        available = output.split()
        if available and self.ups_name not in available:
            self.logger.warning(
                "UPS %s not listed by %s (available: %s)",
                self.ups_name,
                self.server,
                ", ".join(available),
            )
        with self._lock:
            self._connected = True
        self.logger.info("Connected to NUT server %s (UPS: %s)", self.server, self.ups_name)
        return True

    def disconnect(self) -> None:
        with self._lock:
            self._connected = False

    def get_all_variables(self) -> dict[str, str]:
        if not self.is_connected():
            raise SourceConnectionError(f"Not connected to NUT server {self.server}")
        try:
            output = self._run_command([self.upsc_path, self.target])
        except SourceConnectionError:
            self.disconnect()
            raise
        variables = parse_upsc_output(output)
        if not variables:
            self.logger.warning("No variables retrieved from %s", self.target)
        return variables

    def _run_command(self, command: list[str]) -> str:
        try:
            result = subprocess.run(
                command,
                check=False,
                text=True,
                capture_output=True,
                timeout=self.timeout_s,
            )
        except FileNotFoundError as exc:
            raise SourceConnectionError(f"Command not found: {command[0]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise SourceConnectionError(f"Command timed out: {' '.join(command)}") from exc
        if result.returncode != 0:
            if result.stderr:
                self.logger.log(TRACE_LEVEL, "stderr: %s", result.stderr.strip())
            raise SourceConnectionError(
                f"Command failed ({result.returncode}): {' '.join(command)}"
            )
        if result.stdout:
            self.logger.log(TRACE_LEVEL, "stdout: %s", result.stdout.strip())
        return result.stdout or ""
