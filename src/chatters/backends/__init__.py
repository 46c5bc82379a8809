"""Chat backends implementing the capability contract."""

from .base import (
    Backend,
    BackendRegistry,
    HistoryPage,
    RawEvent,
    RawEventChannel,
    SendHandle,
    resolve_client_factory,
)
from .local import LocalBackend, create_local_backend
from .matrix import MatrixBackend, MatrixClient, create_matrix_backend
from .signal import SignalBackend, SignalClient, create_signal_backend

__all__ = [
    "Backend",
    "BackendRegistry",
    "HistoryPage",
    "LocalBackend",
    "MatrixBackend",
    "MatrixClient",
    "RawEvent",
    "RawEventChannel",
    "SendHandle",
    "SignalBackend",
    "SignalClient",
    "resolve_client_factory",
]

# Register backends
BackendRegistry.register("local", create_local_backend)
BackendRegistry.register("matrix", create_matrix_backend)
BackendRegistry.register("signal", create_signal_backend)
