"""
In-memory MySQL-family XA server for tests.

Models per-session XA state the way the server does: XA END leaves the
branch IDLE in its session, prepared branches become global and survive
the session, and anything not prepared is rolled back when the session
goes away.
"""

import itertools
import re
import threading
import uuid

import pytest

from xaresource.xa import (
    Connection,
    ConnectionLostError,
    DatabaseError,
    ResourceManagerConfig,
    XADataSource,
    Xid,
)

ER_XAER_NOTA = 1397
ER_XAER_RMFAIL = 1399
ER_XAER_DUPID = 1440
CR_SERVER_GONE = 2006

_XID = r"X'(?P<gtrid>[0-9a-fA-F]*)',X'(?P<bqual>[0-9a-fA-F]*)',(?P<fmt>-?\d+)"
_XA_COMMAND = re.compile(
    r"^XA (?P<verb>START|END|PREPARE|COMMIT|ROLLBACK) " + _XID + r"(?P<opt>.*)$",
    re.IGNORECASE,
)
_INSERT = re.compile(r"^INSERT INTO xatable VALUES \((-?\d+)\)$", re.IGNORECASE)

_session_ids = itertools.count(1)


def _key(match):
    return (
        int(match.group("fmt")),
        bytes.fromhex(match.group("gtrid")),
        bytes.fromhex(match.group("bqual")),
    )


class FakeXAServer:
    """Shared server state: one table plus the prepared branches."""

    def __init__(self):
        self.lock = threading.RLock()
        self.rows = []
        self.prepared = {}  # key -> pending rows
        self.live = set()  # keys of ACTIVE/IDLE branches in some session
        self.commands = []  # (session id, text)
        self._injected = []  # [prefix, exception, remaining]

    def connect(self) -> 'FakeConnection':
        return FakeConnection(self)

    def inject_error(self, prefix: str, error: Exception, times: int = 1) -> None:
        """Make the next command(s) starting with prefix raise error."""
        with self.lock:
            self._injected.append([prefix.upper(), error, times])

    def take_injected(self, text: str):
        with self.lock:
            for entry in self._injected:
                prefix, error, remaining = entry
                if remaining > 0 and text.upper().startswith(prefix):
                    entry[2] -= 1
                    return error
        return None

    def committed_rows(self):
        with self.lock:
            return sorted(self.rows)

    def resolve_externally(self, xid: Xid, commit: bool) -> None:
        """Complete a prepared branch behind the coordinator's back."""
        key = (xid.format_id, xid.global_transaction_id, xid.branch_qualifier)
        with self.lock:
            pending = self.prepared.pop(key)
            if commit:
                self.rows.extend(pending)


class FakeConnection(Connection):
    """One server session."""

    def __init__(self, server: FakeXAServer):
        self.server = server
        self.connection_id = next(_session_ids)
        self.xa_key = None
        self.xa_state = None  # None, "ACTIVE" or "IDLE"
        self.pending = []
        self.closed = False

    def execute_command(self, text):
        if self.closed:
            raise ConnectionLostError("MySQL server has gone away", CR_SERVER_GONE)

        injected = self.server.take_injected(text)
        if injected is not None:
            raise injected

        with self.server.lock:
            self.server.commands.append((self.connection_id, text))

            match = _XA_COMMAND.match(text)
            if match:
                return self._xa(match.group("verb").upper(), _key(match), match.group("opt").strip().upper())

            if text.upper() == "XA RECOVER":
                return [
                    (fmt, len(gtrid), len(bqual), gtrid + bqual)
                    for fmt, gtrid, bqual in self.server.prepared
                ]

            return self._sql(text)

    def _idle_error(self):
        return DatabaseError(
            "The command cannot be executed when global transaction is in the IDLE state",
            ER_XAER_RMFAIL,
        )

    def _nota(self):
        return DatabaseError("XAER_NOTA: Unknown XID", ER_XAER_NOTA)

    def _xa(self, verb, key, opt):
        server = self.server

        if verb == "START":
            if opt == "RESUME":
                if self.xa_key != key:
                    raise self._nota()
                if self.xa_state != "IDLE":
                    raise DatabaseError("XAER_RMFAIL: not idle", ER_XAER_RMFAIL)
                self.xa_state = "ACTIVE"
                return None

            if opt:
                raise DatabaseError(f"XAER_INVAL: {opt} not supported", 1398)
            if self.xa_state is not None:
                raise DatabaseError("XAER_RMFAIL: transaction in progress", ER_XAER_RMFAIL)
            if key in server.live or key in server.prepared:
                raise DatabaseError("XAER_DUPID: The XID already exists", ER_XAER_DUPID)

            server.live.add(key)
            self.xa_key = key
            self.xa_state = "ACTIVE"
            self.pending = []
            return None

        if verb == "END":
            if self.xa_key != key:
                raise self._nota()
            if self.xa_state != "ACTIVE":
                raise self._idle_error()
            self.xa_state = "IDLE"
            return None

        if verb == "PREPARE":
            if self.xa_key != key:
                raise self._nota()
            if self.xa_state != "IDLE":
                raise DatabaseError("XAER_RMFAIL: branch is active", ER_XAER_RMFAIL)
            server.prepared[key] = self.pending
            self._clear()
            return None

        if verb == "COMMIT":
            if self.xa_key == key:
                if opt != "ONE PHASE" or self.xa_state != "IDLE":
                    raise DatabaseError("XAER_RMFAIL: wrong state", ER_XAER_RMFAIL)
                server.rows.extend(self.pending)
                self._clear()
                return None

            if opt == "ONE PHASE" or key not in server.prepared:
                raise self._nota()

            server.rows.extend(server.prepared.pop(key))
            return None

        # ROLLBACK
        if self.xa_key == key:
            if self.xa_state != "IDLE":
                raise DatabaseError("XAER_RMFAIL: branch is active", ER_XAER_RMFAIL)
            self._clear()
            return None

        if key not in server.prepared:
            raise self._nota()

        del server.prepared[key]
        return None

    def _sql(self, text):
        if self.xa_state == "IDLE":
            raise self._idle_error()

        insert = _INSERT.match(text)
        if insert:
            value = int(insert.group(1))
            if self.xa_state == "ACTIVE":
                self.pending.append(value)
            else:
                self.server.rows.append(value)
            return 1

        upper = text.upper()
        if upper.startswith("CREATE TABLE"):
            return 0

        if upper == "SELECT 1":
            return [(1,)]

        if upper.startswith("SELECT * FROM XATABLE"):
            visible = self.server.rows + (self.pending if self.xa_state else [])
            return [(value,) for value in sorted(visible)]

        raise DatabaseError(f"Unsupported statement: {text}", 1064)

    def _clear(self):
        self.server.live.discard(self.xa_key)
        self.xa_key = None
        self.xa_state = None
        self.pending = []

    def close(self):
        with self.server.lock:
            if self.xa_key is not None:
                self._clear()
            self.closed = True

    def kill(self):
        """Drop the session as if the network failed."""
        self.close()

    def is_valid(self):
        return not self.closed


@pytest.fixture
def server():
    """Fresh fake server."""
    return FakeXAServer()


@pytest.fixture
def datasource(server):
    """Datasource without pinning."""
    return XADataSource(
        connection_factory=server.connect,
        config=ResourceManagerConfig(host="db1", port=3306, database="test"),
    )


@pytest.fixture
def pinned_datasource(server):
    """Datasource with pinGlobalTxToPhysicalConnection=true."""
    config = ResourceManagerConfig(host="db1", port=3306, database="test")
    config.set_properties("pinGlobalTxToPhysicalConnection=true")
    return XADataSource(connection_factory=server.connect, config=config)


def new_xid(parent: Xid = None) -> Xid:
    """Random Xid, or a sibling branch of parent."""
    if parent is None:
        return Xid(1, uuid.uuid4().hex.encode(), uuid.uuid4().hex.encode())
    return Xid(1, parent.global_transaction_id, uuid.uuid4().hex.encode())


@pytest.fixture
def make_xid():
    """Factory for random Xids."""
    return new_xid
