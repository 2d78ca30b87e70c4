"""
Provider-specific XA command text.

Builds the administrative statements that realize each XA operation on the
server and translates vendor errors into XA error codes.
"""

from typing import Dict, Optional, Type

from xaresource.xa.connection import ConnectionLostError, DatabaseError
from xaresource.xa.errors import (
    XA_RBDEADLOCK,
    XA_RBROLLBACK,
    XA_RBTIMEOUT,
    XAER_DUPID,
    XAER_INVAL,
    XAER_NOTA,
    XAER_OUTSIDE,
    XAER_RMERR,
    XAER_RMFAIL,
    XAException,
    exception_for_code,
)
from xaresource.xa.xid import Xid


class XADialect:
    """
    MySQL / MariaDB XA syntax.

    The server keeps XA state per session: XA END leaves the branch idle in
    the session that ran it, and XA START ... RESUME reactivates it there.
    Suspend and pinned join are therefore both expressed as END followed by
    START RESUME on the same physical connection.
    """

    name = "mysql"

    # Vendor error code -> XA error code
    ERROR_CODES: Dict[int, int] = {
        1397: XAER_NOTA,
        1398: XAER_INVAL,
        1399: XAER_RMFAIL,
        1400: XAER_OUTSIDE,
        1401: XAER_RMERR,
        1402: XA_RBROLLBACK,
        1440: XAER_DUPID,
        1613: XA_RBTIMEOUT,
        1614: XA_RBDEADLOCK,
    }

    def start(self, xid: Xid) -> str:
        return f"XA START {xid.to_sql()}"

    def resume(self, xid: Xid) -> str:
        return f"XA START {xid.to_sql()} RESUME"

    def end(self, xid: Xid) -> str:
        return f"XA END {xid.to_sql()}"

    def prepare(self, xid: Xid) -> str:
        return f"XA PREPARE {xid.to_sql()}"

    def commit(self, xid: Xid, one_phase: bool = False) -> str:
        if one_phase:
            return f"XA COMMIT {xid.to_sql()} ONE PHASE"
        return f"XA COMMIT {xid.to_sql()}"

    def rollback(self, xid: Xid) -> str:
        return f"XA ROLLBACK {xid.to_sql()}"

    def recover(self) -> str:
        return "XA RECOVER"

    def forget(self, xid: Xid) -> Optional[str]:
        """Heuristic decisions are not kept by the server, nothing to send."""
        return None

    def translate_error(self, error: BaseException, operation: str) -> XAException:
        """
        Translate a collaborator failure into an XA exception.

        Args:
            error: Exception raised by the physical connection
            operation: XA operation name, for the message

        Returns:
            XAException subclass instance
        """
        if isinstance(error, XAException):
            return error

        if isinstance(error, (ConnectionLostError, OSError)):
            return exception_for_code(
                XAER_RMFAIL,
                f"{operation} failed, connection lost: {error}",
                error,
            )

        if isinstance(error, DatabaseError):
            code = self.ERROR_CODES.get(error.error_code, XAER_RMERR)
            return exception_for_code(
                code,
                f"{operation} failed: {error} (vendor code {error.error_code})",
                error,
            )

        return exception_for_code(XAER_RMERR, f"{operation} failed: {error}", error)


DIALECTS: Dict[str, Type[XADialect]] = {
    "mysql": XADialect,
    "mariadb": XADialect,
}


def create_dialect(name: str = "mysql") -> XADialect:
    """
    Create dialect by name.

    Args:
        name: Dialect name

    Returns:
        XADialect instance
    """
    try:
        return DIALECTS[name.lower()]()
    except KeyError:
        raise ValueError(f"Unknown XA dialect: {name}")
