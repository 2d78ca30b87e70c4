"""
Connection contract and XA connection handles.

The physical Connection is an external collaborator (the database driver).
XAConnection pairs one physical connection with its XAResource, and
LogicalConnection is the handle application code runs SQL through.
"""

import itertools
import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Optional

from xaresource.xa.errors import ProtocolViolation
from xaresource.utils.logging import get_logger

if TYPE_CHECKING:
    from xaresource.xa.datasource import XADataSource
    from xaresource.xa.resource import XAResource

logger = get_logger(__name__)

_READ_ONLY_STATEMENT = re.compile(
    r"^\s*(SELECT|SHOW|DESCRIBE|DESC|EXPLAIN|SET|USE|DO)\b",
    re.IGNORECASE,
)

_connection_ids = itertools.count(1)


class DatabaseError(Exception):
    """
    Error reported by the database server.

    Attributes:
        error_code: Vendor error code
        sql_state: SQLSTATE, if known
    """

    def __init__(
        self,
        message: str,
        error_code: int = 0,
        sql_state: Optional[str] = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.sql_state = sql_state


class ConnectionLostError(DatabaseError):
    """The connection to the server failed or was closed."""
    pass


class Connection(ABC):
    """
    Physical database connection consumed by the resource manager.

    Implementations raise DatabaseError for server-side errors and
    ConnectionLostError (or OSError) when the connection is unusable.
    """

    @abstractmethod
    def execute_command(self, text: str) -> Any:
        """
        Execute a statement or administrative command.

        Args:
            text: Command text

        Returns:
            Result rows (list of tuples) or None
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the connection."""
        pass

    @abstractmethod
    def is_valid(self) -> bool:
        """Check whether the connection is still usable."""
        pass


def is_read_only_statement(sql: str) -> bool:
    """Check whether a statement leaves data untouched."""
    return bool(_READ_ONLY_STATEMENT.match(sql))


class LogicalConnection:
    """
    Application-facing connection handle.

    Statements run on whichever physical connection the owning XAResource
    is routed to: its own, or the pinned connection of a joined branch.
    """

    def __init__(self, xa_connection: 'XAConnection'):
        self._xa_connection = xa_connection
        self._closed = False

    def execute(self, sql: str) -> Any:
        """
        Execute SQL on behalf of the current branch.

        Args:
            sql: Statement text

        Returns:
            Result of the physical connection

        Raises:
            ProtocolViolation: If the handle is closed
            ConnectionBusy: If the physical connection runs another branch
        """
        if self._closed or self._xa_connection.closed:
            raise ProtocolViolation("Connection handle is closed")

        resource = self._xa_connection.get_xa_resource()
        return resource.execute_for_branch(sql)

    def close(self) -> None:
        """Close the handle; the physical connection stays with the XAConnection."""
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed


class XAConnection:
    """
    Pooled XA connection: one physical connection and its XAResource.

    Example:
        xa_conn = datasource.get_xa_connection()
        resource = xa_conn.get_xa_resource()
        conn = xa_conn.get_connection()

        resource.start(xid, XAFlags.TMNOFLAGS)
        conn.execute("INSERT INTO t VALUES (1)")
        resource.end(xid, XAFlags.TMSUCCESS)
        resource.commit(xid, one_phase=True)

        xa_conn.close()
    """

    def __init__(self, physical: Connection, datasource: 'XADataSource'):
        """
        Initialize XA connection.

        Args:
            physical: Physical connection
            datasource: Owning datasource
        """
        from xaresource.xa.resource import XAResource

        self.physical = physical
        self.datasource = datasource
        self.connection_id = getattr(physical, "connection_id", None) or next(_connection_ids)
        self._closed = False
        self._resource = XAResource(self, datasource)

        logger.debug("XAConnection opened", connection_id=self.connection_id)

    def get_connection(self) -> LogicalConnection:
        """
        Get a handle for running SQL.

        Returns:
            LogicalConnection
        """
        if self._closed:
            raise ProtocolViolation("XAConnection is closed")
        return LogicalConnection(self)

    def get_xa_resource(self) -> 'XAResource':
        """
        Get the XA resource of this connection.

        Returns:
            XAResource
        """
        return self._resource

    def close(self) -> None:
        """
        Close the physical connection.

        Branches held on it are dropped; the server rolls back anything not
        yet prepared and keeps prepared branches for recover().
        """
        if self._closed:
            return

        self._closed = True
        self.datasource.release(self)

        try:
            self.physical.close()
        except (DatabaseError, OSError) as e:
            logger.warning(
                "Error closing physical connection",
                connection_id=self.connection_id,
                error=str(e),
            )

        logger.debug("XAConnection closed", connection_id=self.connection_id)

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
