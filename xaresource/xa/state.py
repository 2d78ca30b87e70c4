"""
Branch state management.

Defines branch states, the events that move a branch between them, and the
in-memory registry of live branches shared by every connection of a
datasource.
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from xaresource.xa.errors import (
    DuplicateBranch,
    ProtocolViolation,
    ResourceManagerError,
    UnknownTransaction,
    XAER_RMFAIL,
    XAException,
)
from xaresource.xa.xid import Xid
from xaresource.utils.logging import get_logger

logger = get_logger(__name__)


class BranchState(Enum):
    """
    Branch lifecycle states.

    State transitions:
    UNSTARTED → ACTIVE ⇄ SUSPENDED
                ACTIVE → ENDED → PREPARED → COMMITTED
                          ↘ (one phase) ↗    ↘ HEURISTICALLY_COMPLETED → FORGOTTEN
                ACTIVE/SUSPENDED/ENDED/PREPARED → ROLLED_BACK
                any live state → FAILED (connection lost)
    """

    UNSTARTED = "UNSTARTED"  # No record exists
    ACTIVE = "ACTIVE"  # Bound to a connection, executing work
    SUSPENDED = "SUSPENDED"  # Ended with suspend, eligible for resume
    ENDED = "ENDED"  # Work finished, eligible for prepare or join
    PREPARED = "PREPARED"  # Voted, in doubt until commit/rollback
    COMMITTED = "COMMITTED"
    ROLLED_BACK = "ROLLED_BACK"
    HEURISTICALLY_COMPLETED = "HEURISTICALLY_COMPLETED"  # Waiting for forget
    FORGOTTEN = "FORGOTTEN"
    FAILED = "FAILED"  # Connection failed, resolve through recover

    def is_terminal(self) -> bool:
        """Check if state is terminal (done)."""
        return self in (
            BranchState.COMMITTED,
            BranchState.ROLLED_BACK,
            BranchState.FORGOTTEN,
            BranchState.FAILED,
        )

    def removes_record(self) -> bool:
        """Check if reaching this state deletes the branch record."""
        return self.is_terminal() and self != BranchState.FAILED


class BranchEvent(Enum):
    """Events that drive branch transitions."""

    START = "START"
    JOIN = "JOIN"
    RESUME = "RESUME"
    END = "END"
    SUSPEND = "SUSPEND"
    PREPARE = "PREPARE"
    PREPARE_READ_ONLY = "PREPARE_READ_ONLY"
    PREPARE_FAILED = "PREPARE_FAILED"
    COMMIT_ONE_PHASE = "COMMIT_ONE_PHASE"
    COMMIT = "COMMIT"
    ROLLBACK = "ROLLBACK"
    HEURISTIC = "HEURISTIC"
    FORGET = "FORGET"
    CONNECTION_FAILED = "CONNECTION_FAILED"


class TransitionError(Enum):
    """Reasons a transition is refused."""

    PROTOCOL = "PROTOCOL"  # Illegal in the current state
    UNKNOWN = "UNKNOWN"  # No such branch
    DUPLICATE = "DUPLICATE"  # Branch already exists
    RESOURCE_FAILED = "RESOURCE_FAILED"  # Connection behind the branch failed


_LIVE_STATES = frozenset({
    BranchState.ACTIVE,
    BranchState.SUSPENDED,
    BranchState.ENDED,
    BranchState.PREPARED,
    BranchState.HEURISTICALLY_COMPLETED,
})

# event -> (legal source states, target state)
_TRANSITIONS = {
    BranchEvent.START: ({BranchState.UNSTARTED}, BranchState.ACTIVE),
    BranchEvent.JOIN: ({BranchState.ENDED}, BranchState.ACTIVE),
    BranchEvent.RESUME: ({BranchState.SUSPENDED}, BranchState.ACTIVE),
    BranchEvent.END: (
        {BranchState.ACTIVE, BranchState.SUSPENDED},
        BranchState.ENDED,
    ),
    BranchEvent.SUSPEND: ({BranchState.ACTIVE}, BranchState.SUSPENDED),
    BranchEvent.PREPARE: ({BranchState.ENDED}, BranchState.PREPARED),
    BranchEvent.PREPARE_READ_ONLY: ({BranchState.ENDED}, BranchState.COMMITTED),
    BranchEvent.PREPARE_FAILED: ({BranchState.ENDED}, BranchState.ROLLED_BACK),
    BranchEvent.COMMIT_ONE_PHASE: ({BranchState.ENDED}, BranchState.COMMITTED),
    BranchEvent.COMMIT: ({BranchState.PREPARED}, BranchState.COMMITTED),
    BranchEvent.ROLLBACK: (
        {
            BranchState.ACTIVE,
            BranchState.SUSPENDED,
            BranchState.ENDED,
            BranchState.PREPARED,
        },
        BranchState.ROLLED_BACK,
    ),
    BranchEvent.HEURISTIC: (
        {BranchState.PREPARED, BranchState.ENDED},
        BranchState.HEURISTICALLY_COMPLETED,
    ),
    BranchEvent.FORGET: (
        {BranchState.HEURISTICALLY_COMPLETED},
        BranchState.FORGOTTEN,
    ),
    BranchEvent.CONNECTION_FAILED: (set(_LIVE_STATES), BranchState.FAILED),
}


@dataclass(frozen=True)
class TransitionResult:
    """
    Outcome of applying an event to a state.

    Attributes:
        ok: Whether the transition is legal
        state: Resulting state (unchanged when refused)
        error: Refusal reason when not ok
    """
    ok: bool
    state: BranchState
    error: Optional[TransitionError] = None


def transition(state: BranchState, event: BranchEvent) -> TransitionResult:
    """
    Total transition function for branch states.

    Never raises: every (state, event) pair maps to either the next state or
    a refusal reason.

    Args:
        state: Current state (UNSTARTED when no record exists)
        event: Event to apply

    Returns:
        TransitionResult
    """
    sources, target = _TRANSITIONS[event]

    if state in sources:
        return TransitionResult(ok=True, state=target)

    if state == BranchState.FAILED:
        return TransitionResult(False, state, TransitionError.RESOURCE_FAILED)

    if event == BranchEvent.START:
        return TransitionResult(False, state, TransitionError.DUPLICATE)

    # Completed branches no longer exist as far as the coordinator is concerned
    if state == BranchState.UNSTARTED or state.is_terminal():
        return TransitionResult(False, state, TransitionError.UNKNOWN)

    return TransitionResult(False, state, TransitionError.PROTOCOL)


def error_for(
    result: TransitionResult,
    xid: Xid,
    event: BranchEvent,
) -> XAException:
    """
    Build the exception reporting a refused transition.

    Args:
        result: Refused transition result
        xid: Branch Xid
        event: Event that was refused

    Returns:
        XAException subclass instance
    """
    if result.error == TransitionError.DUPLICATE:
        return DuplicateBranch(f"Branch {xid} already exists")

    if result.error == TransitionError.UNKNOWN:
        return UnknownTransaction(f"Branch {xid} not found")

    if result.error == TransitionError.RESOURCE_FAILED:
        return ResourceManagerError(
            f"Connection of branch {xid} failed; resolve it through recover()",
            XAER_RMFAIL,
        )

    return ProtocolViolation(
        f"Cannot apply {event.value} to branch {xid} in state {result.state.value}"
    )


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class BranchRecord:
    """
    Live branch tracked by the resource manager.

    Attributes:
        xid: Branch Xid
        state: Current branch state
        connection: Physical connection holding the branch on the server
        rollback_only: Branch ended with TMFAIL
        has_writes: Data-modifying statements ran while the branch was bound
        created_at: Creation timestamp (ms)
        updated_at: Last transition timestamp (ms)
    """
    xid: Xid
    state: BranchState
    connection: Any = None
    rollback_only: bool = False
    has_writes: bool = False
    created_at: int = field(default_factory=_now_ms)
    updated_at: int = field(default_factory=_now_ms)

    @property
    def suspended(self) -> bool:
        """Whether the branch can be resumed."""
        return self.state == BranchState.SUSPENDED


class BranchStateManager:
    """
    Tracks live branches for one datasource.

    Records are keyed by Xid value. The lock is only held while looking up
    and mutating the map, never while the database is being called.
    """

    def __init__(self):
        """Initialize branch state manager."""
        # xid -> BranchRecord
        self._branches: Dict[Xid, BranchRecord] = {}
        self._lock = threading.RLock()

        logger.debug("BranchStateManager initialized")

    def begin(self, xid: Xid, connection: Any) -> BranchRecord:
        """
        Reserve a new ACTIVE branch.

        Args:
            xid: Branch Xid
            connection: Physical connection the branch is started on

        Returns:
            The new record

        Raises:
            DuplicateBranch: If a live record exists for the Xid
        """
        with self._lock:
            existing = self._branches.get(xid)
            state = existing.state if existing else BranchState.UNSTARTED
            result = transition(state, BranchEvent.START)

            if not result.ok:
                raise error_for(result, xid, BranchEvent.START)

            record = BranchRecord(xid=xid, state=result.state, connection=connection)
            self._branches[xid] = record

        logger.info(
            "Branch started",
            xid=str(xid),
            connection_id=getattr(connection, "connection_id", None),
        )

        return record

    def get(self, xid: Xid) -> Optional[BranchRecord]:
        """
        Get branch record.

        Args:
            xid: Branch Xid

        Returns:
            Branch record or None
        """
        with self._lock:
            return self._branches.get(xid)

    def state_of(self, xid: Xid) -> BranchState:
        """Current state of a branch (UNSTARTED when untracked)."""
        with self._lock:
            record = self._branches.get(xid)
            return record.state if record else BranchState.UNSTARTED

    def check(self, xid: Xid, event: BranchEvent) -> TransitionResult:
        """
        Evaluate an event without applying it.

        Args:
            xid: Branch Xid
            event: Event to evaluate

        Returns:
            TransitionResult
        """
        return transition(self.state_of(xid), event)

    def apply(self, xid: Xid, event: BranchEvent) -> TransitionResult:
        """
        Apply an event to a branch.

        Records reaching a terminal state other than FAILED are removed.

        Args:
            xid: Branch Xid
            event: Event to apply

        Returns:
            TransitionResult (the record is left untouched when refused)
        """
        with self._lock:
            record = self._branches.get(xid)
            old_state = record.state if record else BranchState.UNSTARTED
            result = transition(old_state, event)

            if not result.ok:
                return result

            if record is None:
                # Only START leaves UNSTARTED and it goes through begin()
                return result

            record.state = result.state
            record.updated_at = _now_ms()

            if result.state.removes_record():
                del self._branches[xid]

        logger.info(
            "Branch state updated",
            xid=str(xid),
            branch_event=event.value,
            old_state=old_state.value,
            new_state=result.state.value,
        )

        return result

    def mark_rollback_only(self, xid: Xid) -> None:
        """Flag a branch so it can only be rolled back."""
        with self._lock:
            record = self._branches.get(xid)
            if record:
                record.rollback_only = True

    def mark_writes(self, xid: Xid) -> None:
        """Record that a branch modified data."""
        with self._lock:
            record = self._branches.get(xid)
            if record:
                record.has_writes = True

    def discard(self, xid: Xid) -> Optional[BranchRecord]:
        """
        Remove a branch record regardless of its state.

        Args:
            xid: Branch Xid

        Returns:
            The removed record, if any
        """
        with self._lock:
            record = self._branches.pop(xid, None)

        if record:
            logger.info(
                "Branch removed",
                xid=str(xid),
                state=record.state.value,
            )

        return record

    def records_for(self, connection: Any) -> List[BranchRecord]:
        """
        Get branches held on a physical connection.

        Args:
            connection: Physical connection

        Returns:
            List of branch records
        """
        with self._lock:
            return [
                record for record in self._branches.values()
                if record.connection is connection
            ]

    def get_stats(self) -> Dict:
        """
        Get manager statistics.

        Returns:
            Statistics dict
        """
        with self._lock:
            state_counts = {}
            for record in self._branches.values():
                state = record.state.value
                state_counts[state] = state_counts.get(state, 0) + 1

            return {
                "total_branches": len(self._branches),
                "state_counts": state_counts,
            }
