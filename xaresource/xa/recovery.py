"""
Recovery scanning.

Lists in-doubt (prepared but not completed) branches known to the server.
"""

import threading
from typing import Any, Iterable, List, Optional

from xaresource.xa.dialect import XADialect
from xaresource.xa.errors import InvalidArgument, ProtocolViolation
from xaresource.xa.flags import RECOVER_FLAGS, XAFlags
from xaresource.xa.xid import Xid
from xaresource.utils.logging import get_logger

logger = get_logger(__name__)


def parse_recovery_rows(rows: Optional[Iterable[Any]]) -> List[Xid]:
    """
    Parse the rows of an in-doubt transaction listing.

    Each row is (formatID, gtrid_length, bqual_length, data). Rows that
    cannot be decoded are skipped.

    Args:
        rows: Result rows (None means no rows)

    Returns:
        List of Xids, in server order, without duplicates
    """
    xids: List[Xid] = []
    seen = set()

    for row in rows or ():
        try:
            format_id, gtrid_length, bqual_length, data = tuple(row)[:4]
            xid = Xid.from_recovery_row(format_id, gtrid_length, bqual_length, data)
        except (InvalidArgument, ValueError, TypeError) as e:
            logger.warning(
                "Skipping undecodable recovery row",
                row=repr(row),
                error=str(e),
            )
            continue

        if xid not in seen:
            seen.add(xid)
            xids.append(xid)

    return xids


class RecoveryScanner:
    """
    Runs recovery scans for one XAResource.

    A scan opened with TMSTARTRSCAN reads the whole listing once; with a
    batch size configured, it is handed out over several recover() calls
    (TMNOFLAGS to continue, TMENDRSCAN to finish). The scan never touches
    branch records.
    """

    def __init__(self, dialect: XADialect, batch_size: Optional[int] = None):
        """
        Initialize recovery scanner.

        Args:
            dialect: Command dialect
            batch_size: Max Xids per recover() call (None for all at once)
        """
        if batch_size is not None and batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        self.dialect = dialect
        self.batch_size = batch_size

        # Pending Xids of the open scan, None when no scan is open
        self._cursor: Optional[List[Xid]] = None
        self._lock = threading.Lock()

    def recover(self, connection: Any, flags: int) -> List[Xid]:
        """
        Return in-doubt Xids.

        Args:
            connection: Physical connection to query
            flags: TMSTARTRSCAN, TMENDRSCAN, both, or TMNOFLAGS

        Returns:
            List of Xids (empty when nothing is in doubt)

        Raises:
            InvalidArgument: Unrecognized flags
            ProtocolViolation: Continue or end without an open scan
        """
        if flags not in RECOVER_FLAGS:
            raise InvalidArgument(f"Invalid recover flags: {flags!r}")

        start = bool(flags & XAFlags.TMSTARTRSCAN)
        end = bool(flags & XAFlags.TMENDRSCAN)

        if start:
            rows = connection.execute_command(self.dialect.recover())
            xids = parse_recovery_rows(rows)

            logger.info(
                "Recovery scan started",
                in_doubt=len(xids),
                batch_size=self.batch_size,
            )

            with self._lock:
                self._cursor = xids

        with self._lock:
            if self._cursor is None:
                raise ProtocolViolation("No recovery scan in progress")

            if end or self.batch_size is None:
                batch = self._cursor
                self._cursor = [] if not end else None
            else:
                batch = self._cursor[:self.batch_size]
                self._cursor = self._cursor[self.batch_size:]

        if end:
            logger.debug("Recovery scan ended", returned=len(batch))

        return batch

    @property
    def scan_open(self) -> bool:
        """Whether a scan has been started and not ended."""
        with self._lock:
            return self._cursor is not None
