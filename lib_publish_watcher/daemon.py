"""Daemon lifecycle: boot sequence, signal handling and shutdown."""

from __future__ import annotations

import logging
import signal
from types import FrameType
from typing import Optional

from lib_publish_watcher.config import Config
from lib_publish_watcher.context import DaemonContext
from lib_publish_watcher.patterns import IgnoreRules
from lib_publish_watcher.pipeline import PipelineRunner
from lib_publish_watcher.registry import RegistryStartError, RegistrySupervisor
from lib_publish_watcher.watcher import RecursiveWatcher

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Daemon", "EXIT_OK", "EXIT_FAILURE"]

EXIT_OK = 0
EXIT_FAILURE = 1


class Daemon:
    """Wire the registry, pipeline and watcher together for one run.

    Boot order: registry supervisor, one synchronous pipeline run, then the
    recursive watcher. After boot the daemon blocks until SIGINT/SIGTERM.

    Attributes:
        config (Config): The resolved configuration.
        context (DaemonContext): State shared by every component.
        registry (RegistrySupervisor): Owner of the registry process.
        runner (PipelineRunner): The build/unpublish/publish pipeline.
        watcher (RecursiveWatcher): Source tree watcher.
    """

    def __init__(
        self,
        config: Config,
        context: Optional[DaemonContext] = None,
        registry: Optional[RegistrySupervisor] = None,
        runner: Optional[PipelineRunner] = None,
        watcher: Optional[RecursiveWatcher] = None,
    ) -> None:
        self.config = config
        self.context = context or DaemonContext()
        self.registry = registry or RegistrySupervisor(
            config.registry_command,
            config.registry_url,
            max_attempts=config.registry_max_attempts,
            cwd=config.workspace,
        )
        self.runner = runner or PipelineRunner(
            self.context,
            build_command=config.build_command,
            unpublish_command=config.unpublish_command,
            publish_command=config.publish_command,
            build_configuration=config.build_configuration,
            build_timeout=config.build_timeout,
            unpublish_timeout=config.unpublish_timeout,
            publish_timeout=config.publish_timeout,
            cwd=config.workspace,
        )
        self.watcher = watcher or RecursiveWatcher(
            self.context,
            IgnoreRules(config.ignore_patterns),
            self.runner.run_once,
            debounce_seconds=config.debounce_seconds,
            native_recursive=config.native_recursive,
        )

    def _signal_handler(self, sig: int, frame: Optional[FrameType]) -> None:
        """Handle SIGINT/SIGTERM by requesting shutdown."""
        sig_name = signal.Signals(sig).name
        logger.info(f"Received signal {sig_name}, shutting down...")
        self.context.request_stop()
        # A build may be blocking the main thread
        self.runner.stop()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def run(self) -> int:
        """Boot the daemon and block until shutdown.

        Returns:
            int: 0 after a signal-driven shutdown, 1 after a fatal startup error.
        """
        self.install_signal_handlers()
        exit_code = EXIT_OK
        try:
            if not self.registry.start(stop_check=self.context.stop_event.is_set):
                return EXIT_OK

            self.runner.run_once()
            if self.context.stopping:
                return EXIT_OK

            logger.info(f"Watching for changes in: {', '.join(self.config.watch_roots)}")
            self.watcher.watch_tree(self.config.watch_roots)
            logger.info("Ready. Press Ctrl+C to exit.")

            # Blocks until the signal handler sets the event
            self.context.stop_event.wait()
        except RegistryStartError as e:
            logger.critical(f"Fatal: {e}")
            exit_code = EXIT_FAILURE
        except KeyboardInterrupt:
            logger.info("KeyboardInterrupt received, stopping...")
        except Exception as e:
            logger.critical(f"Fatal error: {e}", exc_info=True)
            exit_code = EXIT_FAILURE
        finally:
            self.shutdown()
        return exit_code

    def shutdown(self) -> None:
        """Stop the watcher, any running command and the registry.

        Each step is attempted even if an earlier one fails.
        """
        self.context.request_stop()
        for name, stop in (
            ("watcher", self.watcher.stop),
            ("pipeline", self.runner.stop),
            ("registry", self.registry.stop),
        ):
            try:
                stop()
            except Exception as e:
                logger.error(f"Error stopping {name}: {e}")

        # Log final statistics
        try:
            logger.info(f"Pipeline statistics: {self.runner.get_statistics()}")
            logger.info(f"Watcher statistics: {self.watcher.get_statistics()}")
        except Exception as e:
            logger.error(f"Error collecting statistics: {e}")
