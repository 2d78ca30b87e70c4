"""
Global transaction identifier (Xid).

An Xid names one branch of a global transaction: the global transaction id
(gtrid) is shared by every branch, the branch qualifier (bqual) tells the
siblings apart.
"""

import uuid
from dataclasses import dataclass
from typing import Union

from xaresource.xa.errors import InvalidArgument

MAXGTRIDSIZE = 64
MAXBQUALSIZE = 64

NULL_FORMAT_ID = -1

_INT32_MIN = -(2 ** 31)
_INT32_MAX = 2 ** 31 - 1

BytesLike = Union[bytes, bytearray, memoryview, str]


def _to_bytes(value: BytesLike) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    return value


@dataclass(frozen=True)
class Xid:
    """
    Immutable branch identifier.

    Equality and hashing are structural, so two separately built Xids with
    the same fields are interchangeable as lookup keys.

    Attributes:
        format_id: Format identifier (not -1, fits in a signed 32-bit int)
        global_transaction_id: Global transaction id (1..64 bytes)
        branch_qualifier: Branch qualifier (0..64 bytes)
    """
    format_id: int
    global_transaction_id: bytes
    branch_qualifier: bytes

    def __post_init__(self):
        if isinstance(self.format_id, bool) or not isinstance(self.format_id, int):
            raise InvalidArgument(f"format_id must be an int, got {self.format_id!r}")

        if self.format_id == NULL_FORMAT_ID:
            raise InvalidArgument("Null Xid (format_id -1) cannot name a branch")

        if not _INT32_MIN <= self.format_id <= _INT32_MAX:
            raise InvalidArgument(f"format_id out of range: {self.format_id}")

        if not isinstance(self.global_transaction_id, bytes):
            raise InvalidArgument("global_transaction_id must be bytes")

        if not isinstance(self.branch_qualifier, bytes):
            raise InvalidArgument("branch_qualifier must be bytes")

        if not 1 <= len(self.global_transaction_id) <= MAXGTRIDSIZE:
            raise InvalidArgument(
                f"global_transaction_id length must be 1..{MAXGTRIDSIZE}, "
                f"got {len(self.global_transaction_id)}"
            )

        if len(self.branch_qualifier) > MAXBQUALSIZE:
            raise InvalidArgument(
                f"branch_qualifier length must be 0..{MAXBQUALSIZE}, "
                f"got {len(self.branch_qualifier)}"
            )

    @classmethod
    def create(
        cls,
        global_transaction_id: BytesLike,
        branch_qualifier: BytesLike = b"",
        format_id: int = 1,
    ) -> 'Xid':
        """
        Create an Xid, encoding str fields as UTF-8.

        Args:
            global_transaction_id: Global transaction id
            branch_qualifier: Branch qualifier
            format_id: Format identifier

        Returns:
            Xid
        """
        return cls(
            format_id=format_id,
            global_transaction_id=_to_bytes(global_transaction_id),
            branch_qualifier=_to_bytes(branch_qualifier),
        )

    @classmethod
    def generate(cls, format_id: int = 1) -> 'Xid':
        """Create an Xid with random gtrid and bqual."""
        return cls.create(str(uuid.uuid4()), str(uuid.uuid4()), format_id)

    @classmethod
    def branch_of(cls, parent: 'Xid', branch_qualifier: BytesLike = None) -> 'Xid':
        """
        Create a sibling branch of the same global transaction.

        Args:
            parent: Xid whose gtrid is shared
            branch_qualifier: Branch qualifier (random if omitted)

        Returns:
            Xid
        """
        if branch_qualifier is None:
            branch_qualifier = str(uuid.uuid4())

        return cls(
            format_id=parent.format_id,
            global_transaction_id=parent.global_transaction_id,
            branch_qualifier=_to_bytes(branch_qualifier),
        )

    @classmethod
    def from_recovery_row(
        cls,
        format_id: int,
        gtrid_length: int,
        bqual_length: int,
        data: BytesLike,
    ) -> 'Xid':
        """
        Parse one row of an in-doubt transaction listing.

        The data column holds gtrid and bqual concatenated. Servers asked to
        convert the Xid return it as a "0x" prefixed hex string instead.

        Args:
            format_id: formatID column
            gtrid_length: gtrid_length column
            bqual_length: bqual_length column
            data: data column

        Returns:
            Xid

        Raises:
            InvalidArgument: If the row is malformed
        """
        if isinstance(data, str):
            if data[:2].lower() == "0x":
                try:
                    raw = bytes.fromhex(data[2:])
                except ValueError as e:
                    raise InvalidArgument(f"Bad hex Xid data: {data!r}", cause=e) from e
            else:
                raw = data.encode("latin-1")
        else:
            raw = _to_bytes(data)

        gtrid_length = int(gtrid_length)
        bqual_length = int(bqual_length)

        if gtrid_length < 0 or bqual_length < 0 or len(raw) != gtrid_length + bqual_length:
            raise InvalidArgument(
                f"Xid data length {len(raw)} does not match "
                f"gtrid_length={gtrid_length} + bqual_length={bqual_length}"
            )

        return cls(
            format_id=int(format_id),
            global_transaction_id=raw[:gtrid_length],
            branch_qualifier=raw[gtrid_length:],
        )

    def to_sql(self) -> str:
        """
        Render the Xid as a SQL literal list: X'gtrid',X'bqual',formatID.

        Returns:
            SQL fragment
        """
        return (
            f"X'{self.global_transaction_id.hex()}',"
            f"X'{self.branch_qualifier.hex()}',"
            f"{self.format_id}"
        )

    def same_global_transaction(self, other: 'Xid') -> bool:
        """Check whether other is a branch of the same global transaction."""
        return (
            self.format_id == other.format_id
            and self.global_transaction_id == other.global_transaction_id
        )

    def __str__(self):
        return (
            f"{self.format_id}:{self.global_transaction_id.hex()}:"
            f"{self.branch_qualifier.hex()}"
        )
