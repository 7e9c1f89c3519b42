"""Fake GCE backend for integration testing.

Provides an in-memory implementation of the BackendClient protocol so runs
can be exercised end to end without cloud connectivity.

Key Features:
- Thread-safe state shaped like the Compute/IAM REST resources
- Asynchronous operations, applied when awaited
- Server-assigned values (IPs, emails, fingerprints, boot disks)
- Error injection per method and resource
- Call log for asserting what the engine did (or did not) call

Usage:
    from cloud_mock import MockBackendClient

    backend = MockBackendClient(project="test-project")
    report = await reconcile(config, CloudAPITarget(), tasks, backend=backend)
    assert backend.state.mutation_count == 3
"""

from .client import DEFAULT_PROJECT, MockBackendClient, create_backend
from .state import CallRecord, MockCloudState

__all__ = [
    "DEFAULT_PROJECT",
    "CallRecord",
    "MockBackendClient",
    "MockCloudState",
    "create_backend",
]
