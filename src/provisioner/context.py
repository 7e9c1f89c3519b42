"""Run-scoped context shared by every node of one reconciliation run.

Holds the configuration, the active target, the backend client and the
run-wide cancellation signal. All backend calls go through call(), which:

1. Checks the cancellation signal before starting the call.
2. Runs the blocking call in the default executor.
3. Bounds it with a timeout, raising OperationTimeoutError on expiry.

Cancellation never interrupts a call that has already started; it only stops
new calls (and new nodes) from starting, so no resource is left half
configured by the engine itself.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from .backend import BackendClient, Operation, OperationTimeoutError, ResourceRef
from .config import Config, ConfigurationError
from .vfs import VFSContext

if TYPE_CHECKING:
    from .graph import TaskGraph
    from .render import RenderTarget

logger = logging.getLogger(__name__)

R = TypeVar("R")


class RunCancelledError(Exception):
    """Raised at a node entry or call boundary after the run was cancelled."""

    pass


@dataclass
class RunContext:
    """Shared state of one run. Only the cancellation event is mutable."""

    config: Config
    target: RenderTarget
    backend_client: BackendClient | None = None
    vfs: VFSContext = field(default_factory=VFSContext)
    graph: TaskGraph | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def backend(self) -> BackendClient:
        if self.backend_client is None:
            raise ConfigurationError(
                f"Target {self.target.name!r} needs a backend client but none was configured"
            )
        return self.backend_client

    @property
    def project(self) -> str:
        return self.config.project

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        if not self.cancel_event.is_set():
            logger.warning("Run cancellation requested")
        self.cancel_event.set()

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise RunCancelledError("run was cancelled")

    async def call(
        self,
        fn: Callable[..., R],
        *args: Any,
        timeout_seconds: int | None = None,
        operation_name: str | None = None,
        check_cancelled: bool = True,
    ) -> R:
        """Run a blocking backend call with cancellation check and timeout.

        Raises:
            RunCancelledError: If the run was cancelled before the call.
            OperationTimeoutError: If the call exceeds its timeout.
        """
        if check_cancelled:
            self.check_cancelled()
        timeout = timeout_seconds or self.config.call_timeout_seconds
        name = operation_name or getattr(fn, "__name__", "backend call")

        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, functools.partial(fn, *args)),
                timeout=timeout,
            )
        except TimeoutError as e:
            logger.error(
                f"{name} timed out",
                extra={"operation": name, "timeout_seconds": timeout},
            )
            raise OperationTimeoutError(f"{name} timed out after {timeout}s") from e

    async def find(self, ref: ResourceRef) -> dict[str, Any] | None:
        return await self.call(self.backend.find, ref, operation_name=f"find {ref}")

    async def list(self, collection: str, location: str | None = None) -> list[dict[str, Any]]:
        return await self.call(
            self.backend.list, collection, location, operation_name=f"list {collection}"
        )

    async def create(self, ref: ResourceRef, body: dict[str, Any]) -> Operation:
        return await self.call(self.backend.create, ref, body, operation_name=f"create {ref}")

    async def update(self, ref: ResourceRef, changes: dict[str, Any]) -> Operation:
        return await self.call(self.backend.update, ref, changes, operation_name=f"update {ref}")

    async def await_operation(self, operation: Operation) -> None:
        """Wait for an operation started by create() or update().

        Not subject to cancellation: once the backend accepted a mutation the
        node waits for its terminal state.
        """
        await self.call(
            self.backend.await_operation,
            operation,
            timeout_seconds=self.config.operation_timeout_seconds,
            operation_name=f"operation {operation.name}",
            check_cancelled=False,
        )

