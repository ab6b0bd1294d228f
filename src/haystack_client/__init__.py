"""Haystack API client

HaystackClient - facade for CRUD, history and batch operations
TokenManager - OAuth2 token lifecycle with single-flight refresh
RequestSession - authenticated requests with one retry on 401
BatchExecutor - partitioned, paced execution of bulk operations
"""

from .auth import LifecycleState, TokenManager, TokenState
from .batch import (
    BatchExecutor,
    BatchOperations,
    BatchOptions,
    BatchOutcome,
    EntityCriteria,
    ProgressSink,
    TqdmProgress,
)
from .client import HaystackClient
from .config import ClientConfig, ClientOptions
from .exceptions import (
    AuthenticationError,
    BatchPayloadError,
    GraphQLError,
    HaystackClientError,
    HaystackError,
    HisMergeError,
    PartitionError,
    RequestError,
    TransportError,
)
from .his_write_payload import HisWritePayload
from .requests import RequestSession
from .transport import HttpxTransport, Transport, install_logging_bridge

__all__ = [
    "AuthenticationError",
    "BatchExecutor",
    "BatchOperations",
    "BatchOptions",
    "BatchOutcome",
    "BatchPayloadError",
    "ClientConfig",
    "ClientOptions",
    "EntityCriteria",
    "GraphQLError",
    "HaystackClient",
    "HaystackClientError",
    "HaystackError",
    "HisMergeError",
    "HisWritePayload",
    "HttpxTransport",
    "LifecycleState",
    "PartitionError",
    "ProgressSink",
    "RequestError",
    "RequestSession",
    "TokenManager",
    "TokenState",
    "TqdmProgress",
    "Transport",
    "TransportError",
    "install_logging_bridge",
]
