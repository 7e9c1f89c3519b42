"""Run wiring shared by the CLI: logging, backend loading, target selection.

A run is one snapshot of desired state reconciled against one target:
- cloud: live API calls through a backend client
- terraform: a main.tf.json plus side files, no live mutation
- dryrun: discovery and diff only, the plan is reported

The backend client is pluggable. ``--backend package.module:factory`` names
a zero-argument callable returning an object that satisfies the
BackendClient protocol.
"""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
import signal
import sys
from collections.abc import Iterable
from datetime import UTC, datetime

from .backend import BackendClient
from .config import Config, ConfigurationError, TargetKind
from .reconciler import Reconciler
from .render import CloudAPITarget, DryRunTarget, RenderTarget
from .scheduler import RunReport
from .task import Task
from .terraform import TerraformTarget
from .vfs import VFSContext

# Attributes every LogRecord carries; anything else came in through extra={...}
_RECORD_ATTRIBUTES = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)

NOISY_LOGGERS = ("boto3", "botocore", "urllib3", "s3transfer", "google")


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(json_output: bool = False, level: int = logging.INFO) -> None:
    """Configure logging on stdout.

    Args:
        json_output: Emit one JSON object per line (for pipelines) instead of
            plain text (for interactive use).
        level: Root log level.
    """
    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def load_backend(spec: str) -> BackendClient:
    """Instantiate a backend client from a ``module:factory`` string.

    Raises:
        ConfigurationError: If the module or factory cannot be loaded.
    """
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"backend must be given as module:factory, got {spec!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"cannot import backend module {module_name!r}: {e}") from e
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigurationError(f"{module_name!r} has no callable {attr!r}")
    return factory()


def create_target(config: Config, backend: BackendClient | None) -> RenderTarget:
    """Build the render target selected by config.target.

    Raises:
        ConfigurationError: If the cloud target is selected without a backend.
    """
    match config.target:
        case TargetKind.CLOUD:
            if backend is None:
                raise ConfigurationError("target 'cloud' requires a backend (--backend module:factory)")
            return CloudAPITarget()
        case TargetKind.TERRAFORM:
            return TerraformTarget(config.project, config.region, config.output_dir)
        case TargetKind.DRY_RUN:
            return DryRunTarget(discovers=backend is not None)
    raise ConfigurationError(f"unknown target {config.target!r}")


async def run_tasks(
    config: Config,
    target: RenderTarget,
    tasks: Iterable[Task],
    backend: BackendClient | None = None,
    vfs: VFSContext | None = None,
) -> RunReport:
    """Reconcile tasks, cancelling the run on SIGINT or SIGTERM.

    In-flight backend calls run to completion; nodes not yet started are
    reported as cancelled.

    Raises:
        ConfigurationError: If the graph or target pre-scan is invalid.
    """
    logger = logging.getLogger(__name__)
    reconciler = Reconciler(config, target, backend=backend, vfs=vfs)

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.cancel()

    installed: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not on the main thread or not supported by the platform
            logger.debug("Signal handler not installed", extra={"signal": sig.name})

    try:
        return await reconciler.run(tasks)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
