"""
xaresource - XA two-phase-commit resource manager client.

Lets an external transaction coordinator drive database connections through
the XA protocol with:
- Structural Xid identity for branch lookup and recovery matching
- A per-branch state machine enforcing legal XA transitions
- Connection-to-branch binding with join, suspend and resume
- Optional pinning of global transactions to physical connections
- Recovery scans for in-doubt branches
"""

__version__ = "0.1.0"

from xaresource.xa import (
    XAConnection,
    XADataSource,
    XAFlags,
    XAResource,
    Xid,
)

__all__ = [
    "XAConnection",
    "XADataSource",
    "XAFlags",
    "XAResource",
    "Xid",
]
