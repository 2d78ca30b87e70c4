"""
Connection-to-branch binding.

Tracks which physical connection is executing work for which branch, and
which physical connection a global transaction is pinned to.
"""

import threading
from typing import Any, Dict, Optional

from xaresource.xa.errors import (
    ConnectionBusy,
    DuplicateBranch,
    InvalidArgument,
    ProtocolViolation,
    UnknownTransaction,
)
from xaresource.xa.flags import XAFlags
from xaresource.xa.state import BranchRecord, BranchState
from xaresource.xa.xid import Xid
from xaresource.utils.logging import get_logger

logger = get_logger(__name__)


def _connection_id(connection: Any) -> Any:
    return getattr(connection, "connection_id", id(connection))


class ConnectionBindingManager:
    """
    Owns the connection → branch map and the pin table of a datasource.

    A physical connection is bound to at most one active branch. With
    pinning enabled, every started Xid is also pinned to the physical
    connection it was started on, so a later join from any pooled
    connection of the same datasource is routed back to it.

    All methods hold the lock only for the lookup-and-mutate step.
    """

    def __init__(self, pin_global_tx: bool = False):
        """
        Initialize binding manager.

        Args:
            pin_global_tx: Enable pinning of global transactions to
                physical connections
        """
        self.pin_global_tx = pin_global_tx

        # id(connection) -> bound Xid
        self._bindings: Dict[int, Xid] = {}

        # xid -> pinned physical connection
        self._pins: Dict[Xid, Any] = {}

        self._lock = threading.RLock()

        logger.info(
            "ConnectionBindingManager initialized",
            pin_global_tx=pin_global_tx,
        )

    def set_pinning(self, enabled: bool) -> None:
        """
        Switch pinning on or off.

        Turning it off drops every existing pin.

        Args:
            enabled: New pinning mode
        """
        with self._lock:
            self.pin_global_tx = enabled
            if not enabled:
                self._pins.clear()

        logger.info("Pinning mode changed", pin_global_tx=enabled)

    def bind(self, connection: Any, xid: Xid) -> None:
        """
        Bind a physical connection to a branch.

        Args:
            connection: Physical connection
            xid: Branch Xid

        Raises:
            ConnectionBusy: If bound to a different branch
        """
        with self._lock:
            current = self._bindings.get(id(connection))

            if current is not None and current != xid:
                raise ConnectionBusy(
                    f"Connection {_connection_id(connection)} is bound to "
                    f"branch {current}"
                )

            self._bindings[id(connection)] = xid

        logger.debug(
            "Connection bound",
            connection_id=_connection_id(connection),
            xid=str(xid),
        )

    def unbind(self, connection: Any) -> Optional[Xid]:
        """
        Release a connection from its branch.

        Args:
            connection: Physical connection

        Returns:
            The Xid it was bound to, if any
        """
        with self._lock:
            xid = self._bindings.pop(id(connection), None)

        if xid is not None:
            logger.debug(
                "Connection unbound",
                connection_id=_connection_id(connection),
                xid=str(xid),
            )

        return xid

    def bound_xid(self, connection: Any) -> Optional[Xid]:
        """
        Get the branch a connection is bound to.

        Args:
            connection: Physical connection

        Returns:
            Bound Xid or None
        """
        with self._lock:
            return self._bindings.get(id(connection))

    def ensure_free(self, connection: Any, xid: Optional[Xid] = None) -> None:
        """
        Check that a connection may run work for xid.

        Args:
            connection: Physical connection
            xid: Branch the work belongs to (None for work outside a branch)

        Raises:
            ConnectionBusy: If bound to another branch
        """
        with self._lock:
            current = self._bindings.get(id(connection))

        if current is not None and current != xid:
            raise ConnectionBusy(
                f"Connection {_connection_id(connection)} is bound to "
                f"branch {current}"
            )

    def pin(self, xid: Xid, connection: Any) -> None:
        """
        Pin a global transaction branch to a physical connection.

        No-op when pinning is disabled.

        Args:
            xid: Branch Xid
            connection: Physical connection
        """
        if not self.pin_global_tx:
            return

        with self._lock:
            self._pins[xid] = connection

        logger.debug(
            "Branch pinned to physical connection",
            xid=str(xid),
            connection_id=_connection_id(connection),
        )

    def unpin(self, xid: Xid) -> None:
        """
        Remove the pin of a branch.

        Args:
            xid: Branch Xid
        """
        with self._lock:
            connection = self._pins.pop(xid, None)

        if connection is not None:
            logger.debug("Branch unpinned", xid=str(xid))

    def pinned_connection(self, xid: Xid) -> Optional[Any]:
        """
        Get the physical connection a branch is pinned to.

        Args:
            xid: Branch Xid

        Returns:
            Physical connection or None
        """
        with self._lock:
            return self._pins.get(xid)

    def resolve_for_join_or_resume(
        self,
        connection: Any,
        xid: Xid,
        flags: int,
        record: Optional[BranchRecord],
    ) -> Any:
        """
        Pick the physical connection a join or resume must run on.

        Resume continues a suspended branch on the physical connection that
        holds it. Join reuses an ended branch and is only possible with
        pinning, in which case the pinned physical connection is returned
        whichever pooled connection the coordinator called through.

        Args:
            connection: Physical connection of the calling resource
            xid: Branch Xid
            flags: TMJOIN or TMRESUME
            record: Current branch record

        Returns:
            Physical connection to start the branch on

        Raises:
            UnknownTransaction: No such branch
            DuplicateBranch: Join without pinning support
            ProtocolViolation: Resume from a connection not holding the branch
            ConnectionBusy: Target connection is bound to another branch
        """
        if flags not in (XAFlags.TMJOIN, XAFlags.TMRESUME):
            raise InvalidArgument(f"Expected TMJOIN or TMRESUME, got {flags!r}")

        if record is None:
            raise UnknownTransaction(f"Branch {xid} not found")

        with self._lock:
            pinned = self._pins.get(xid) if self.pin_global_tx else None

            if flags == XAFlags.TMJOIN:
                if not self.pin_global_tx:
                    raise DuplicateBranch(
                        f"Cannot join branch {xid}: joining an ended branch "
                        f"requires pinGlobalTxToPhysicalConnection"
                    )
                target = pinned if pinned is not None else record.connection

            else:
                target = pinned if pinned is not None else record.connection

                if target is not connection and not self.pin_global_tx:
                    raise ProtocolViolation(
                        f"Branch {xid} can only be resumed on connection "
                        f"{_connection_id(record.connection)}"
                    )

            if record.state == BranchState.ACTIVE:
                # Still executing somewhere, the state machine will refuse it
                return target

            current = self._bindings.get(id(target))
            if current is not None and current != xid:
                raise ConnectionBusy(
                    f"Connection {_connection_id(target)} is bound to "
                    f"branch {current}"
                )

        logger.debug(
            "Resolved connection for join/resume",
            xid=str(xid),
            flags="TMJOIN" if flags == XAFlags.TMJOIN else "TMRESUME",
            caller_connection_id=_connection_id(connection),
            target_connection_id=_connection_id(target),
            pinned=pinned is not None,
        )

        return target

    def release_connection(self, connection: Any) -> None:
        """
        Forget everything known about a closed connection.

        Args:
            connection: Physical connection
        """
        with self._lock:
            self._bindings.pop(id(connection), None)

            stale = [
                xid for xid, pinned in self._pins.items()
                if pinned is connection
            ]
            for xid in stale:
                del self._pins[xid]

        logger.debug(
            "Connection released",
            connection_id=_connection_id(connection),
            dropped_pins=len(stale),
        )

    def get_stats(self) -> Dict:
        """
        Get binding statistics.

        Returns:
            Statistics dict
        """
        with self._lock:
            return {
                "bound_connections": len(self._bindings),
                "pinned_branches": len(self._pins),
                "pin_global_tx": self.pin_global_tx,
            }
