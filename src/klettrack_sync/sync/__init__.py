"""Push/pull synchronization with the sync authority."""

from klettrack_sync.sync.device import DeviceInfo, get_device_id, get_device_info, get_device_name
from klettrack_sync.sync.errors import (
    ConfigurationError,
    ForbiddenError,
    InsecureEndpointError,
    MutationRejectedError,
    ResponseDecodingError,
    SyncError,
    TransportError,
    UnauthorizedError,
)
from klettrack_sync.sync.protocol import (
    ConflictReason,
    Mutation,
    MutationType,
    PullChange,
    PullRequest,
    PullResult,
    PushRequest,
    PushResult,
    SyncConflict,
)

__all__ = [
    "DeviceInfo",
    "get_device_id",
    "get_device_info",
    "get_device_name",
    "ConfigurationError",
    "ForbiddenError",
    "InsecureEndpointError",
    "MutationRejectedError",
    "ResponseDecodingError",
    "SyncError",
    "TransportError",
    "UnauthorizedError",
    "ConflictReason",
    "Mutation",
    "MutationType",
    "PullChange",
    "PullRequest",
    "PullResult",
    "PushRequest",
    "PushResult",
    "SyncConflict",
]
