"""Optimistic record sync: identifiers, the offline queue and reconciliation."""

from .auth import AuthError, HttpAuthClient, Session, SessionManager
from .conflict import ConflictResolution, ConflictResolver, ConflictWinner
from .coordinator import FlushResult, MutationResult, SyncCoordinator, SyncStatus
from .errors import (
    ConflictError,
    ConnectivityError,
    IdentityCollisionError,
    IdentityUnavailableError,
    QueueExhaustedError,
    RejectionError,
    SyncError,
)
from .events import AuthEvent, SignedIn, SignedOut, Subscription, TokenRefreshed
from .ids import IdGenerator, generate_id
from .options import SyncConfig
from .reconcile import Reconciler, Selection
from .records import OperationKind, OperationStatus, PendingOperation, Record, RecordState, decode_ndjson, encode_ndjson
from .remote import InMemoryRemoteStore, RemoteStore, RestRemoteStore
from .store import LocalSyncStore

__all__ = [
    "AuthError",
    "AuthEvent",
    "HttpAuthClient",
    "Session",
    "SessionManager",
    "SignedIn",
    "SignedOut",
    "TokenRefreshed",
    "Subscription",
    "ConflictError",
    "ConnectivityError",
    "IdentityCollisionError",
    "IdentityUnavailableError",
    "QueueExhaustedError",
    "RejectionError",
    "SyncError",
    "ConflictResolution",
    "ConflictResolver",
    "ConflictWinner",
    "IdGenerator",
    "generate_id",
    "SyncConfig",
    "LocalSyncStore",
    "InMemoryRemoteStore",
    "RemoteStore",
    "RestRemoteStore",
    "Record",
    "RecordState",
    "OperationKind",
    "OperationStatus",
    "PendingOperation",
    "encode_ndjson",
    "decode_ndjson",
    "SyncCoordinator",
    "MutationResult",
    "FlushResult",
    "SyncStatus",
    "Reconciler",
    "Selection",
]
