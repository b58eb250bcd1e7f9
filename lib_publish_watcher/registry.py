"""Local package registry process supervisor."""

from __future__ import annotations

import enum
import errno
import logging
import shlex
import subprocess
import time
from typing import Callable, List, Optional, Union

import requests

logger = logging.getLogger(__name__)

__all__ = ["RegistryStartError", "RegistryState", "RegistrySupervisor"]

ADDRESS_IN_USE_MARKERS = ("EADDRINUSE", "address already in use")


class RegistryStartError(RuntimeError):
    """The local registry could not be started or never became reachable."""


class RegistryState(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"


def _is_address_in_use(error: BaseException) -> bool:
    if getattr(error, "errno", None) == errno.EADDRINUSE:
        return True
    message = str(error).lower()
    return any(marker.lower() in message for marker in ADDRESS_IN_USE_MARKERS)


class RegistrySupervisor:
    """Start the local registry, wait until it answers, and stop it on exit.

    The registry's own stdout/stderr are inherited so its log stays visible
    to the operator.

    Ownership:
    - The spawned process handle belongs to this object alone.
    - ``stop()`` is idempotent and safe if the process never started.
    """

    __slots__ = (
        'command', 'ping_url', 'max_attempts', 'poll_interval', 'request_timeout',
        'cwd', 'state', '_process', '_exit_reported'
    )

    def __init__(
        self,
        command: Union[str, List[str]],
        ping_url: str,
        max_attempts: int = 30,
        poll_interval: float = 1.0,
        request_timeout: float = 2.0,
        cwd: Optional[str] = None,
    ) -> None:
        self.command: List[str] = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.command:
            raise ValueError("Registry command must not be empty")
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        self.ping_url = ping_url
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout
        self.cwd = cwd
        self.state = RegistryState.STOPPED
        self._process: Optional[subprocess.Popen] = None
        self._exit_reported = False

    @property
    def process(self) -> Optional[subprocess.Popen]:
        return self._process

    def start(self, stop_check: Optional[Callable[[], bool]] = None) -> bool:
        """Spawn the registry and wait for it to become healthy.

        Args:
            stop_check: Optional callable returning True if waiting should be
                aborted (e.g. shutdown).

        Returns:
            bool: True once the registry answers, False if aborted by `stop_check`.

        Raises:
            RegistryStartError: If the spawn fails for a reason other than the
                address being in use, or the health check never succeeds.
        """
        self.state = RegistryState.STARTING
        logger.info("Starting local registry: %s", " ".join(self.command))
        self._spawn()

        try:
            ready = self.wait_until_ready(stop_check=stop_check)
        except RegistryStartError:
            self.state = RegistryState.FAILED
            self.stop(final_state=RegistryState.FAILED)
            raise

        if ready:
            self.state = RegistryState.READY
        return ready

    def _spawn(self) -> None:
        try:
            # stdout/stderr inherited on purpose
            self._process = subprocess.Popen(self.command, cwd=self.cwd)
        except OSError as e:
            if _is_address_in_use(e):
                logger.warning(
                    "Registry reported address already in use (%s). "
                    "Assuming another instance is serving; checking health.", e
                )
                self._process = None
                return
            logger.error("Failed to spawn registry process: %s", e)
            self.state = RegistryState.FAILED
            raise RegistryStartError(f"Failed to spawn registry: {e}") from e
        logger.debug("Registry process started (PID: %s)", self._process.pid)

    def check_health(self) -> bool:
        """Poll the ping URL once.

        Returns:
            bool: True if it answered 200.
        """
        try:
            response = requests.get(self.ping_url, timeout=self.request_timeout)
        except requests.RequestException as e:
            logger.debug("Registry health check failed: %s", e)
            return False
        if response.status_code != 200:
            logger.debug("Registry health check returned HTTP %s", response.status_code)
            return False
        return True

    def wait_until_ready(self, stop_check: Optional[Callable[[], bool]] = None) -> bool:
        """Poll the registry once per interval up to `max_attempts` times.

        Args:
            stop_check: Optional callable returning True if waiting should be aborted.

        Returns:
            bool: True when ready, False if aborted.

        Raises:
            RegistryStartError: If every attempt failed.
        """
        for attempt in range(1, self.max_attempts + 1):
            if not self._sleep(self.poll_interval, stop_check):
                logger.info("Wait for registry aborted by stop signal.")
                return False

            self._report_early_exit()

            if self.check_health():
                logger.info("Registry is ready at %s (attempt %d/%d)", self.ping_url, attempt, self.max_attempts)
                return True
            logger.debug("Registry not ready yet (attempt %d/%d)", attempt, self.max_attempts)

        raise RegistryStartError(
            f"Registry failed to start: no healthy response from {self.ping_url} "
            f"after {self.max_attempts} attempts"
        )

    def _report_early_exit(self) -> None:
        if self._process is None or self._exit_reported:
            return
        code = self._process.poll()
        if code is not None:
            self._exit_reported = True
            logger.warning(
                "Registry process exited with code %s during startup. "
                "Another instance may already be serving; continuing health checks.", code
            )

    @staticmethod
    def _sleep(duration: float, stop_check: Optional[Callable[[], bool]]) -> bool:
        """Sleep in small chunks to remain responsive to stop_check.

        Returns:
            bool: False if `stop_check` asked to stop.
        """
        if stop_check and stop_check():
            return False
        chunk = 0.1
        slept = 0.0
        while slept < duration:
            time.sleep(min(chunk, duration - slept))
            slept += chunk
            if stop_check and stop_check():
                return False
        return True

    def stop(self, final_state: RegistryState = RegistryState.STOPPED) -> None:
        """Terminate the registry process. Safe to call repeatedly."""
        process = self._process
        self._process = None
        if self.state is not RegistryState.FAILED:
            self.state = final_state
        if process is None:
            return
        if process.poll() is not None:
            logger.debug("Registry process already exited (code %s)", process.returncode)
            return

        logger.info("Stopping local registry (PID: %s)...", process.pid)
        try:
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                logger.warning("Registry did not exit after SIGTERM; killing.")
                process.kill()
                process.wait()
        except OSError as e:
            logger.error("Error stopping registry process: %s", e)
        logger.info("Local registry stopped.")

    def __repr__(self) -> str:
        return f"<RegistrySupervisor url={self.ping_url} state={self.state.value}>"
