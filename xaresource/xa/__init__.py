"""
XA resource manager.

Provides the resource-manager side of two-phase commit: branch identity,
branch state tracking, connection binding and recovery.
"""

from xaresource.xa.binding import ConnectionBindingManager
from xaresource.xa.config import ResourceManagerConfig
from xaresource.xa.connection import (
    Connection,
    ConnectionLostError,
    DatabaseError,
    LogicalConnection,
    XAConnection,
)
from xaresource.xa.datasource import XADataSource
from xaresource.xa.dialect import XADialect, create_dialect
from xaresource.xa.errors import (
    ConnectionBusy,
    DuplicateBranch,
    HeuristicOutcome,
    InvalidArgument,
    ProtocolViolation,
    ResourceManagerError,
    TransactionRolledBack,
    UnknownTransaction,
    XAException,
)
from xaresource.xa.flags import XA_OK, XA_RDONLY, XAFlags
from xaresource.xa.recovery import RecoveryScanner, parse_recovery_rows
from xaresource.xa.resource import XAResource
from xaresource.xa.state import (
    BranchEvent,
    BranchRecord,
    BranchState,
    BranchStateManager,
    TransitionError,
    TransitionResult,
    transition,
)
from xaresource.xa.xid import Xid

__all__ = [
    # Identity
    "Xid",
    "XAFlags",
    "XA_OK",
    "XA_RDONLY",
    # State Management
    "BranchState",
    "BranchEvent",
    "BranchRecord",
    "BranchStateManager",
    "TransitionError",
    "TransitionResult",
    "transition",
    # Binding and Recovery
    "ConnectionBindingManager",
    "RecoveryScanner",
    "parse_recovery_rows",
    # Connections
    "Connection",
    "ConnectionLostError",
    "DatabaseError",
    "LogicalConnection",
    "XAConnection",
    "XADataSource",
    "XADialect",
    "create_dialect",
    "ResourceManagerConfig",
    # Facade
    "XAResource",
    # Errors
    "XAException",
    "ProtocolViolation",
    "UnknownTransaction",
    "DuplicateBranch",
    "ConnectionBusy",
    "InvalidArgument",
    "ResourceManagerError",
    "HeuristicOutcome",
    "TransactionRolledBack",
]
