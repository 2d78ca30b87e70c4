"""
XA error taxonomy.

Every failure reported by the resource manager is an XAException carrying
the X/Open error code a coordinator expects.
"""

from typing import Optional


# Rollback codes (branch was rolled back by the resource manager)
XA_RBBASE = 100
XA_RBROLLBACK = XA_RBBASE
XA_RBCOMMFAIL = XA_RBBASE + 1
XA_RBDEADLOCK = XA_RBBASE + 2
XA_RBINTEGRITY = XA_RBBASE + 3
XA_RBOTHER = XA_RBBASE + 4
XA_RBPROTO = XA_RBBASE + 5
XA_RBTIMEOUT = XA_RBBASE + 6
XA_RBTRANSIENT = XA_RBBASE + 7
XA_RBEND = XA_RBTRANSIENT

# Heuristic outcomes
XA_HEURHAZ = 8
XA_HEURCOM = 7
XA_HEURRB = 6
XA_HEURMIX = 5

# Errors
XAER_ASYNC = -2
XAER_RMERR = -3
XAER_NOTA = -4
XAER_INVAL = -5
XAER_PROTO = -6
XAER_RMFAIL = -7
XAER_DUPID = -8
XAER_OUTSIDE = -9

HEURISTIC_CODES = frozenset({XA_HEURHAZ, XA_HEURCOM, XA_HEURRB, XA_HEURMIX})


class XAException(Exception):
    """
    Base class for XA failures.

    Attributes:
        error_code: X/Open XA error code
        cause: Underlying exception, if any
        rolled_back: True when the branch was rolled back as part of the
            failure (implicit rollback after a failed prepare)
    """

    default_code = XAER_RMERR
    rolled_back_by_default = False

    def __init__(
        self,
        message: str,
        error_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.error_code = self.default_code if error_code is None else error_code
        self.cause = cause
        self.rolled_back = self.rolled_back_by_default

    def __str__(self):
        return f"{super().__str__()} (error_code={self.error_code})"


class ProtocolViolation(XAException):
    """Operation invoked in an illegal state (e.g. prepare before end)."""
    default_code = XAER_PROTO


class UnknownTransaction(XAException):
    """Xid is not tracked, or the branch was already completed."""
    default_code = XAER_NOTA


class DuplicateBranch(XAException):
    """Branch already exists, or join was requested without pinning support."""
    default_code = XAER_DUPID


class ConnectionBusy(XAException):
    """Connection is already bound to a different active branch."""
    default_code = XAER_OUTSIDE


class InvalidArgument(XAException):
    """Malformed Xid or unrecognized flag combination."""
    default_code = XAER_INVAL


class ResourceManagerError(XAException):
    """
    Database or connectivity failure.

    XAER_RMFAIL means the connection is gone and the branch must be
    resolved through recover(); XAER_RMERR is a database-side error.
    """
    default_code = XAER_RMERR

    @property
    def connection_failed(self) -> bool:
        return self.error_code == XAER_RMFAIL


class HeuristicOutcome(XAException):
    """
    Branch was completed without coordinator direction.

    The record stays HEURISTICALLY_COMPLETED until forget() is called.
    """
    default_code = XA_HEURHAZ


class TransactionRolledBack(XAException):
    """The database rolled the branch back."""
    default_code = XA_RBROLLBACK
    rolled_back_by_default = True


def is_rollback_code(error_code: int) -> bool:
    """Check whether an XA code reports a rolled-back branch."""
    return XA_RBBASE <= error_code <= XA_RBEND


def exception_for_code(
    error_code: int,
    message: str,
    cause: Optional[BaseException] = None,
) -> XAException:
    """
    Build the exception class matching an XA error code.

    Args:
        error_code: X/Open XA error code
        message: Error message
        cause: Underlying exception

    Returns:
        XAException subclass instance
    """
    if is_rollback_code(error_code):
        return TransactionRolledBack(message, error_code, cause)

    if error_code in HEURISTIC_CODES:
        return HeuristicOutcome(message, error_code, cause)

    exc_class = {
        XAER_PROTO: ProtocolViolation,
        XAER_NOTA: UnknownTransaction,
        XAER_DUPID: DuplicateBranch,
        XAER_OUTSIDE: ConnectionBusy,
        XAER_INVAL: InvalidArgument,
    }.get(error_code, ResourceManagerError)

    return exc_class(message, error_code, cause)
