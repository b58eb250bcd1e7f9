"""Build, unpublish and publish pipeline.

The pipeline drives three opaque external commands in a fixed order. Only the
build step can abort a run; unpublish failures are expected (nothing published
yet) and publish conflicts on identical versions are benign.

Invariants:
    - At most one pipeline run executes at a time (see
      :meth:`DaemonContext.try_begin_rebuild`).
    - The rebuild state returns to idle when a run ends, whatever the outcome.
    - No command is spawned once shutdown has been requested.
    - ``run_once`` never raises.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from lib_publish_watcher.context import DaemonContext

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "BuildError",
    "PipelineInterrupted",
    "CommandResult",
    "PipelineRunner",
    "DEFAULT_BENIGN_PUBLISH_ERRORS",
]

DEFAULT_BENIGN_PUBLISH_ERRORS: Tuple[str, ...] = (
    "cannot publish over the previously published version",
    "EPUBLISHCONFLICT",
)

OUTPUT_TAIL_LINES = 20


class BuildError(RuntimeError):
    """The build step failed; the current run is aborted."""


class PipelineInterrupted(RuntimeError):
    """Shutdown was requested; no further step may start."""


@dataclass
class CommandResult:
    """Outcome of one external command.

    Attributes:
        returncode (Optional[int]): Exit code, or None if it never ran or timed out.
        output (str): Combined stdout/stderr.
        timed_out (bool): Whether the command was killed after its timeout.
        error (Optional[str]): Spawn error message, if the command could not start.
    """

    returncode: Optional[int]
    output: str = ""
    timed_out: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and self.error is None

    def describe(self) -> str:
        if self.error:
            return f"could not start ({self.error})"
        if self.timed_out:
            return "timed out"
        return f"exited with code {self.returncode}"

    def tail(self, lines: int = OUTPUT_TAIL_LINES) -> str:
        return "\n".join(self.output.strip().splitlines()[-lines:])


def _as_args(command: Union[str, Sequence[str]]) -> List[str]:
    return shlex.split(command) if isinstance(command, str) else list(command)


class PipelineRunner:
    """Run build -> unpublish -> publish, one run at a time.

    Attributes:
        context (DaemonContext): Shared rebuild state.
        cwd (Optional[str]): Directory the commands run in.
    """

    def __init__(
        self,
        context: DaemonContext,
        build_command: Union[str, Sequence[str]],
        unpublish_command: Union[str, Sequence[str]],
        publish_command: Union[str, Sequence[str]],
        build_configuration: Optional[str] = None,
        build_timeout: float = 300.0,
        unpublish_timeout: float = 60.0,
        publish_timeout: float = 120.0,
        benign_publish_errors: Iterable[str] = DEFAULT_BENIGN_PUBLISH_ERRORS,
        cwd: Optional[str] = None,
    ) -> None:
        self.context = context
        self.cwd = cwd

        self.build_args = _as_args(build_command)
        if build_configuration:
            self.build_args.append(f"--configuration={build_configuration}")
        self.unpublish_args = _as_args(unpublish_command)
        self.publish_args = _as_args(publish_command)

        self.build_timeout = build_timeout
        self.unpublish_timeout = unpublish_timeout
        self.publish_timeout = publish_timeout
        self.benign_publish_errors = tuple(s.lower() for s in benign_publish_errors)

        self._process_lock = threading.RLock()
        self._current: Optional[subprocess.Popen] = None

        # Metrics
        self.runs_started: int = 0
        self.runs_succeeded: int = 0
        self.runs_skipped: int = 0
        self.build_failures: int = 0
        self.publish_failures: int = 0
        self.last_duration: float = 0.0

    def run_once(self) -> None:
        """Run the pipeline unless a run is already in progress.

        Returns:
            None
        """
        if not self.context.try_begin_rebuild():
            self.runs_skipped += 1
            logger.info("Rebuild already in progress, skipping trigger.")
            return

        self.runs_started += 1
        logger.info("Rebuild started.")
        succeeded = False
        try:
            self._ensure_running("build")
            self._build()
            self._ensure_running("unpublish")
            self._unpublish()
            self._ensure_running("publish")
            succeeded = self._publish()
        except PipelineInterrupted as e:
            logger.info(f"Rebuild interrupted by shutdown: {e}.")
        except BuildError as e:
            self.build_failures += 1
            logger.error(f"Rebuild aborted: {e}. Previously published packages are unchanged.")
        except Exception as e:
            logger.error(f"Unexpected error during rebuild: {e}", exc_info=True)
        finally:
            self.last_duration = self.context.end_rebuild()

        if succeeded:
            self.runs_succeeded += 1
            logger.info(f"Rebuild finished in {self.last_duration:.1f}s.")
        else:
            logger.info(f"Rebuild ended after {self.last_duration:.1f}s; waiting for the next change.")

    def _ensure_running(self, name: str) -> None:
        if self.context.stopping:
            raise PipelineInterrupted(f"{name} not started")

    def _build(self) -> None:
        logger.info("Building packages...")
        result = self.run_command("build", self.build_args, self.build_timeout)
        if not result.ok:
            if result.output.strip():
                logger.error(f"Build output:\n{result.tail()}")
            raise BuildError(f"build {result.describe()}")
        logger.info("Build completed successfully.")

    def _unpublish(self) -> None:
        logger.info("Unpublishing previous versions...")
        result = self.run_command("unpublish", self.unpublish_args, self.unpublish_timeout)
        if result.ok:
            logger.info("Unpublish completed successfully.")
        else:
            # Nothing published yet, or already removed
            logger.info(f"Unpublish {result.describe()}; continuing with publish.")

    def _publish(self) -> bool:
        """Publish the built packages.

        Returns:
            bool: True if published (or already published with identical versions).
        """
        logger.info("Publishing packages...")
        result = self.run_command("publish", self.publish_args, self.publish_timeout)
        if result.ok:
            logger.info("Publish completed successfully.")
            return True

        if not result.timed_out and self.is_benign_publish_error(result.output):
            logger.info("Packages already published with these versions; nothing to do.")
            return True

        self.publish_failures += 1
        if result.output.strip():
            logger.warning(f"Publish output:\n{result.tail()}")
        logger.warning(f"Publish {result.describe()}; packages may be unpublished until the next change.")
        return False

    def is_benign_publish_error(self, output: str) -> bool:
        lowered = output.lower()
        return any(signature in lowered for signature in self.benign_publish_errors)

    def run_command(self, name: str, args: List[str], timeout: float) -> CommandResult:
        """Run one external command with a wall-clock timeout.

        The command is killed if it exceeds `timeout`. Spawn errors and
        timeouts are reported in the result, never raised.

        Args:
            name (str): Step name for logging.
            args (List[str]): The command line.
            timeout (float): Seconds before the command is killed.

        Returns:
            CommandResult: Exit code, combined output and failure details.

        Raises:
            PipelineInterrupted: If shutdown was requested before the command
                started, or the command failed after shutdown was requested.
        """
        logger.debug(f"Running {name}: {' '.join(args)} (timeout {timeout}s)")
        start = time.monotonic()
        # Spawning under the lock lets stop() see every child it must kill
        with self._process_lock:
            self._ensure_running(name)
            try:
                process = subprocess.Popen(
                    args,
                    cwd=self.cwd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    errors="replace",
                )
            except OSError as e:
                logger.error(f"Could not start {name} command '{args[0]}': {e}")
                return CommandResult(returncode=None, error=str(e))
            self._current = process
            if self.context.stopping:
                # A signal handler ran between the check and the spawn
                process.kill()
        try:
            try:
                output, _ = process.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.error(f"{name.capitalize()} exceeded its {timeout}s timeout; killing it.")
                process.kill()
                output, _ = process.communicate()
                return CommandResult(returncode=None, output=output or "", timed_out=True)
        finally:
            with self._process_lock:
                self._current = None

        if process.returncode != 0 and self.context.stopping:
            raise PipelineInterrupted(f"{name} killed")

        elapsed = time.monotonic() - start
        logger.debug(f"{name.capitalize()} finished in {elapsed:.2f}s with code {process.returncode}")
        if logger.isEnabledFor(logging.DEBUG) and output:
            logger.debug(f"{name.capitalize()} output:\n{output.rstrip()}")
        return CommandResult(returncode=process.returncode, output=output or "")

    def stop(self) -> None:
        """Kill the command currently running, if any.

        Returns:
            None
        """
        with self._process_lock:
            process = self._current
        if process is not None and process.poll() is None:
            logger.info(f"Killing running pipeline command (PID: {process.pid})")
            try:
                process.kill()
            except OSError as e:
                logger.error(f"Error killing pipeline command: {e}")

    def get_statistics(self) -> Dict[str, Any]:
        """Return usage statistics.

        Returns:
            Dict[str, Any]: Run counters and the last run duration.
        """
        return {
            "runs_started": self.runs_started,
            "runs_succeeded": self.runs_succeeded,
            "runs_skipped": self.runs_skipped,
            "build_failures": self.build_failures,
            "publish_failures": self.publish_failures,
            "last_duration": self.last_duration,
        }

    def __repr__(self) -> str:
        return f"<PipelineRunner cwd={self.cwd} rebuilding={self.context.is_rebuilding}>"
