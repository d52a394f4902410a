# termchat_history/remote_api/__init__.py
from .client import RemoteStoreClient
from .exceptions import (
    RemoteStoreError, ConnectivityTimeout, RemoteAuthenticationError,
    TransientRemoteError, PermanentRemoteError
)
from .schemas import (
    ChangePage, PulledRecord, UpsertOutcome,
    PipelineResponse, PipelineResult, StatementResult
)

__all__ = [
    "RemoteStoreClient",
    "RemoteStoreError", "ConnectivityTimeout", "RemoteAuthenticationError",
    "TransientRemoteError", "PermanentRemoteError",
    "ChangePage", "PulledRecord", "UpsertOutcome",
    "PipelineResponse", "PipelineResult", "StatementResult",
]
