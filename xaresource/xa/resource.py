"""
XA resource manager facade.

The operation surface an external transaction coordinator drives:
start, end, prepare, commit, rollback, recover, forget and is_same_rm.
"""

from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, List, Optional

from xaresource.xa.connection import (
    ConnectionLostError,
    DatabaseError,
    is_read_only_statement,
)
from xaresource.xa.errors import (
    HeuristicOutcome,
    InvalidArgument,
    ProtocolViolation,
    ResourceManagerError,
    TransactionRolledBack,
    UnknownTransaction,
    XA_HEURHAZ,
    XAER_RMFAIL,
    XAException,
)
from xaresource.xa.flags import END_FLAGS, START_FLAGS, XA_OK, XA_RDONLY, XAFlags
from xaresource.xa.recovery import RecoveryScanner
from xaresource.xa.state import BranchEvent, BranchRecord, BranchState, error_for
from xaresource.xa.xid import Xid
from xaresource.utils.logging import (
    bind_branch_context,
    clear_branch_context,
    get_logger,
)

if TYPE_CHECKING:
    from xaresource.xa.connection import XAConnection
    from xaresource.xa.datasource import XADataSource

logger = get_logger(__name__)

_FLAG_NAMES = {
    XAFlags.TMNOFLAGS: "TMNOFLAGS",
    XAFlags.TMJOIN: "TMJOIN",
    XAFlags.TMRESUME: "TMRESUME",
    XAFlags.TMSUCCESS: "TMSUCCESS",
    XAFlags.TMFAIL: "TMFAIL",
    XAFlags.TMSUSPEND: "TMSUSPEND",
}

# Branches still held by the session that started them
_SESSION_STATES = frozenset({
    BranchState.ACTIVE,
    BranchState.SUSPENDED,
    BranchState.ENDED,
})


class XAResource:
    """
    Resource manager side of the XA protocol for one pooled connection.

    Branch records, bindings and pins are shared with every other
    XAResource of the same datasource; nothing here blocks on another
    branch, and no lock is held while the database is called.

    Routing of branch commands:
    - start(TMNOFLAGS) runs on this resource's physical connection
    - join/resume run where the binding manager resolves them
    - prepare/commit/rollback/forget run on the pinned physical connection
      when there is one; otherwise an unprepared branch runs on the session
      that started it and a prepared branch on this resource's own connection
    """

    def __init__(self, xa_connection: 'XAConnection', datasource: 'XADataSource'):
        """
        Initialize XA resource.

        Args:
            xa_connection: Owning XA connection
            datasource: Datasource holding the shared branch state
        """
        self._xa_connection = xa_connection
        self._datasource = datasource
        self._dialect = datasource.dialect
        self._branches = datasource.branches
        self._bindings = datasource.bindings
        self._scanner = RecoveryScanner(
            self._dialect,
            batch_size=datasource.config.recover_batch_size,
        )

        # Branch this resource is currently executing for, and where
        self._current_xid: Optional[Xid] = None
        self._route: Any = None

        self._transaction_timeout = 0

    @property
    def physical(self) -> Any:
        """Physical connection owned by this resource."""
        return self._xa_connection.physical

    @property
    def current_xid(self) -> Optional[Xid]:
        """Branch currently associated with this resource."""
        return self._current_xid

    # ------------------------------------------------------------------
    # XA operations
    # ------------------------------------------------------------------

    def start(self, xid: Xid, flags: int = XAFlags.TMNOFLAGS) -> None:
        """
        Start work on a branch.

        Args:
            xid: Branch Xid
            flags: TMNOFLAGS (new branch), TMJOIN or TMRESUME

        Raises:
            InvalidArgument: Malformed Xid or flags
            DuplicateBranch: Branch exists, or join without pinning
            ConnectionBusy: Connection bound to another branch
            ProtocolViolation: Resource already associated with a branch
            UnknownTransaction: Join/resume of an unknown branch
            ResourceManagerError: Database failure
        """
        self._validate_xid(xid)
        if flags not in START_FLAGS:
            raise InvalidArgument(f"Invalid start flags: {flags!r}")

        with self._branch_context(xid):
            self._check_not_associated()

            if flags == XAFlags.TMNOFLAGS:
                target = self._start_new(xid)
            else:
                target = self._start_existing(xid, flags)

            self._current_xid = xid
            self._route = target

            logger.info(
                "Branch associated",
                xid=str(xid),
                flags=_FLAG_NAMES[flags],
                connection_id=self._connection_id(target),
            )

    def _start_new(self, xid: Xid) -> Any:
        physical = self.physical
        self._branches.begin(xid, physical)

        try:
            self._bindings.bind(physical, xid)
        except XAException:
            self._branches.discard(xid)
            raise

        try:
            self._execute(physical, self._dialect.start(xid), "start")
        except XAException:
            self._bindings.unbind(physical)
            self._branches.discard(xid)
            raise

        self._bindings.pin(xid, physical)
        return physical

    def _start_existing(self, xid: Xid, flags: int) -> Any:
        event = BranchEvent.JOIN if flags == XAFlags.TMJOIN else BranchEvent.RESUME
        record = self._branches.get(xid)

        target = self._bindings.resolve_for_join_or_resume(
            self.physical, xid, flags, record,
        )

        result = self._branches.check(xid, event)
        if not result.ok:
            raise error_for(result, xid, event)

        self._bindings.bind(target, xid)

        try:
            self._execute(target, self._dialect.resume(xid), "start", xid)
        except XAException:
            self._bindings.unbind(target)
            raise

        self._apply(xid, event)
        return target

    def end(self, xid: Xid, flags: int = XAFlags.TMSUCCESS) -> None:
        """
        End work on a branch.

        Args:
            xid: Branch Xid
            flags: TMSUCCESS, TMFAIL (rollback only) or TMSUSPEND

        Raises:
            InvalidArgument: Malformed Xid or flags
            UnknownTransaction: Unknown branch
            ProtocolViolation: Branch not associated with this resource
            TransactionRolledBack: Database rolled the branch back
            ResourceManagerError: Database failure
        """
        self._validate_xid(xid)
        if flags not in END_FLAGS:
            raise InvalidArgument(f"Invalid end flags: {flags!r}")

        event = BranchEvent.SUSPEND if flags == XAFlags.TMSUSPEND else BranchEvent.END

        with self._branch_context(xid):
            record = self._require_record(xid)

            result = self._branches.check(xid, event)
            if not result.ok:
                raise error_for(result, xid, event)

            if record.state == BranchState.SUSPENDED:
                # Already idle on the server, only the record moves
                self._apply(xid, event)
                if flags == XAFlags.TMFAIL:
                    self._branches.mark_rollback_only(xid)
                return

            if xid != self._current_xid:
                raise ProtocolViolation(
                    f"Branch {xid} is not associated with this resource"
                )

            target = self._route

            try:
                self._execute(target, self._dialect.end(xid), "end", xid)
            except TransactionRolledBack:
                self._apply(xid, BranchEvent.ROLLBACK)
                self._finish(xid, target)
                raise

            self._apply(xid, event)

            if flags == XAFlags.TMFAIL:
                self._branches.mark_rollback_only(xid)

            self._bindings.unbind(target)
            self._clear_association()

    def prepare(self, xid: Xid) -> int:
        """
        Ask the branch to vote.

        On a database failure the branch is rolled back before the error is
        reported, and the raised exception has rolled_back set.

        Args:
            xid: Branch Xid

        Returns:
            XA_OK, or XA_RDONLY when the branch made no changes (the branch
            is then already complete)

        Raises:
            UnknownTransaction: Unknown branch
            ProtocolViolation: Branch not ended
            TransactionRolledBack: Branch was marked rollback only
            ResourceManagerError: Database failure
        """
        self._validate_xid(xid)

        with self._branch_context(xid):
            record = self._require_record(xid)

            result = self._branches.check(xid, BranchEvent.PREPARE)
            if not result.ok:
                raise error_for(result, xid, BranchEvent.PREPARE)

            target = self._branch_connection(xid)

            if record.rollback_only:
                self._rollback_only_branch(xid, target, "prepare")

            read_only = (
                self._datasource.config.read_only_optimization
                and not record.has_writes
            )

            if read_only:
                command = self._dialect.commit(xid, one_phase=True)
            else:
                command = self._dialect.prepare(xid)

            try:
                self._execute(target, command, "prepare", xid)
            except XAException as e:
                self._prepare_failed(xid, target, e)
                raise

            if read_only:
                self._apply(xid, BranchEvent.PREPARE_READ_ONLY)
                self._finish(xid, target)
                logger.info("Branch voted read-only", xid=str(xid))
                return XA_RDONLY

            self._apply(xid, BranchEvent.PREPARE)
            return XA_OK

    def _prepare_failed(self, xid: Xid, target: Any, error: XAException) -> None:
        if self._branches.state_of(xid) == BranchState.FAILED:
            # Connection gone, the outcome must come from recover()
            return

        if not isinstance(error, TransactionRolledBack):
            try:
                self._execute(target, self._dialect.rollback(xid), "rollback")
            except XAException as rollback_error:
                logger.error(
                    "Implicit rollback after failed prepare failed",
                    xid=str(xid),
                    error=str(rollback_error),
                )

        self._apply(xid, BranchEvent.PREPARE_FAILED)
        self._finish(xid, target)
        error.rolled_back = True

        logger.warning(
            "Prepare failed, branch rolled back",
            xid=str(xid),
            error=str(error),
        )

    def commit(self, xid: Xid, one_phase: bool = False) -> None:
        """
        Commit a branch.

        Args:
            xid: Branch Xid
            one_phase: Commit an ended branch without a prior prepare

        Raises:
            UnknownTransaction: Unknown branch or already completed
            ProtocolViolation: Branch not in a committable state
            TransactionRolledBack: Database rolled the branch back
            HeuristicOutcome: Branch was resolved outside the coordinator
            ResourceManagerError: Database failure
        """
        self._validate_xid(xid)
        event = BranchEvent.COMMIT_ONE_PHASE if one_phase else BranchEvent.COMMIT

        with self._branch_context(xid):
            record = self._branches.get(xid)

            if not one_phase and self._in_doubt_elsewhere(xid, record):
                self._complete_in_doubt(xid, commit=True)
                return

            if record is None:
                raise UnknownTransaction(f"Branch {xid} not found")

            result = self._branches.check(xid, event)
            if not result.ok:
                raise error_for(result, xid, event)

            target = self._branch_connection(xid)

            if one_phase and record.rollback_only:
                self._rollback_only_branch(xid, target, "commit")

            try:
                self._execute(
                    target,
                    self._dialect.commit(xid, one_phase=one_phase),
                    "commit",
                    xid,
                )
            except XAException as e:
                self._completion_failed(xid, record, target, e)
                raise

            self._apply(xid, event)
            self._finish(xid, target)

    def rollback(self, xid: Xid) -> None:
        """
        Roll a branch back.

        An ACTIVE branch is ended first.

        Args:
            xid: Branch Xid

        Raises:
            UnknownTransaction: Unknown branch or already completed
            ProtocolViolation: Branch heuristically completed
            HeuristicOutcome: Branch was resolved outside the coordinator
            ResourceManagerError: Database failure
        """
        self._validate_xid(xid)

        with self._branch_context(xid):
            record = self._branches.get(xid)

            if self._in_doubt_elsewhere(xid, record):
                self._complete_in_doubt(xid, commit=False)
                return

            if record is None:
                raise UnknownTransaction(f"Branch {xid} not found")

            result = self._branches.check(xid, BranchEvent.ROLLBACK)
            if not result.ok:
                raise error_for(result, xid, BranchEvent.ROLLBACK)

            target = self._branch_connection(xid)

            if record.state == BranchState.ACTIVE:
                try:
                    self._execute(target, self._dialect.end(xid), "rollback", xid)
                except TransactionRolledBack:
                    # Server already discarded the branch
                    self._apply(xid, BranchEvent.ROLLBACK)
                    self._finish(xid, target)
                    return

            try:
                self._execute(target, self._dialect.rollback(xid), "rollback", xid)
            except TransactionRolledBack:
                pass
            except XAException as e:
                self._completion_failed(xid, record, target, e)
                raise

            self._apply(xid, BranchEvent.ROLLBACK)
            self._finish(xid, target)

    def forget(self, xid: Xid) -> None:
        """
        Discard a heuristically completed branch.

        Args:
            xid: Branch Xid

        Raises:
            UnknownTransaction: Unknown branch
            ProtocolViolation: Branch not heuristically completed
            ResourceManagerError: Database failure
        """
        self._validate_xid(xid)

        with self._branch_context(xid):
            self._require_record(xid)

            result = self._branches.check(xid, BranchEvent.FORGET)
            if not result.ok:
                raise error_for(result, xid, BranchEvent.FORGET)

            target = self._branch_connection(xid)
            command = self._dialect.forget(xid)
            if command:
                self._execute(target, command, "forget", xid)

            self._apply(xid, BranchEvent.FORGET)
            self._finish(xid, target)

    def recover(self, flags: int) -> List[Xid]:
        """
        List in-doubt branches.

        Args:
            flags: TMSTARTRSCAN, TMENDRSCAN, both, or TMNOFLAGS to continue

        Returns:
            List of prepared Xids not yet completed

        Raises:
            InvalidArgument: Unrecognized flags
            ProtocolViolation: Continue/end without an open scan
            ResourceManagerError: Database failure
        """
        try:
            return self._scanner.recover(self.physical, flags)
        except (DatabaseError, OSError) as e:
            raise self._dialect.translate_error(e, "recover") from e

    def is_same_rm(self, other: Any) -> bool:
        """
        Check whether another resource talks to the same database.

        Args:
            other: Another XAResource

        Returns:
            True if both resources share the database identity
        """
        if not isinstance(other, XAResource):
            return False

        return (
            self._datasource.config.identity
            == other._datasource.config.identity
        )

    def get_transaction_timeout(self) -> int:
        """Branch timeout in seconds (0 when unset)."""
        return self._transaction_timeout

    def set_transaction_timeout(self, seconds: int) -> bool:
        """
        Record a branch timeout.

        The server has no per-branch XA timeout, so the value is kept for
        get_transaction_timeout() only.

        Args:
            seconds: Timeout in seconds (0 resets)

        Returns:
            False, the timeout is not enforced
        """
        if seconds < 0:
            raise InvalidArgument(f"Timeout must not be negative: {seconds}")

        self._transaction_timeout = seconds
        return False

    # ------------------------------------------------------------------
    # SQL routing
    # ------------------------------------------------------------------

    def execute_for_branch(self, sql: str) -> Any:
        """
        Run application SQL for the associated branch.

        Args:
            sql: Statement text

        Returns:
            Result of the physical connection

        Raises:
            ConnectionBusy: Physical connection runs another branch
            ProtocolViolation: Associated branch is no longer active
        """
        xid = self._current_xid

        if xid is not None and self._branches.state_of(xid) != BranchState.ACTIVE:
            self._clear_association()
            raise ProtocolViolation(f"Branch {xid} is no longer active")

        target = self._route if xid is not None else self.physical
        self._bindings.ensure_free(target, xid)

        try:
            result = target.execute_command(sql)
        except (DatabaseError, OSError) as e:
            if xid is not None and self._connection_lost(target, e):
                self._connection_failed(xid, target)
            raise

        if xid is not None and not is_read_only_statement(sql):
            self._branches.mark_writes(xid)

        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_xid(xid: Any) -> None:
        if not isinstance(xid, Xid):
            raise InvalidArgument(f"Expected an Xid, got {type(xid).__name__}")

    @staticmethod
    def _connection_lost(connection: Any, error: BaseException) -> bool:
        if isinstance(error, (ConnectionLostError, OSError)):
            return True
        # Drivers may report a dropped session as an ordinary server error
        return not connection.is_valid()

    @staticmethod
    def _connection_id(connection: Any) -> Any:
        return getattr(connection, "connection_id", id(connection))

    @contextmanager
    def _branch_context(self, xid: Xid):
        bind_branch_context(xid)
        try:
            yield
        finally:
            clear_branch_context()

    def _require_record(self, xid: Xid) -> BranchRecord:
        record = self._branches.get(xid)
        if record is None:
            raise UnknownTransaction(f"Branch {xid} not found")
        return record

    def _check_not_associated(self) -> None:
        xid = self._current_xid
        if xid is None:
            return

        if self._branches.state_of(xid) == BranchState.ACTIVE:
            raise ProtocolViolation(
                f"Resource is still associated with active branch {xid}"
            )

        # Branch was completed through another resource
        self._clear_association()

    def _clear_association(self) -> None:
        self._current_xid = None
        self._route = None

    def _branch_connection(self, xid: Xid) -> Any:
        """
        Physical connection a branch command must run on.

        Unprepared branches live in the session that started them. Prepared
        branches are global on the server and any session can complete them.
        """
        pinned = self._bindings.pinned_connection(xid)
        if pinned is not None:
            return pinned

        record = self._branches.get(xid)
        if record is not None and record.state in _SESSION_STATES:
            return record.connection

        return self.physical

    def _in_doubt_elsewhere(self, xid: Xid, record: Optional[BranchRecord]) -> bool:
        """Completion must go straight to the server (no usable local record)."""
        if record is None:
            return True

        if record.state == BranchState.FAILED:
            self._branches.discard(xid)
            self._bindings.unpin(xid)
            return True

        return False

    def _complete_in_doubt(self, xid: Xid, commit: bool) -> None:
        """Commit or roll back a prepared branch this process does not track."""
        if commit:
            command = self._dialect.commit(xid)
        else:
            command = self._dialect.rollback(xid)

        self._execute(self.physical, command, "commit" if commit else "rollback")

        logger.info(
            "In-doubt branch completed",
            xid=str(xid),
            outcome="commit" if commit else "rollback",
        )

    def _rollback_only_branch(self, xid: Xid, target: Any, operation: str) -> None:
        self._execute(target, self._dialect.rollback(xid), operation, xid)
        self._apply(xid, BranchEvent.ROLLBACK)
        self._finish(xid, target)
        raise TransactionRolledBack(f"Branch {xid} was ended with TMFAIL")

    def _completion_failed(
        self,
        xid: Xid,
        record: BranchRecord,
        target: Any,
        error: XAException,
    ) -> None:
        """Bring the record in line with a failed commit or rollback."""
        if isinstance(error, TransactionRolledBack):
            self._apply(xid, BranchEvent.ROLLBACK)
            self._finish(xid, target)

        elif isinstance(error, HeuristicOutcome):
            self._apply(xid, BranchEvent.HEURISTIC)

        elif isinstance(error, UnknownTransaction) and record.state == BranchState.PREPARED:
            # Prepared branch vanished: somebody else decided its outcome
            self._apply(xid, BranchEvent.HEURISTIC)
            raise HeuristicOutcome(
                f"Prepared branch {xid} was completed outside the coordinator",
                XA_HEURHAZ,
                error,
            ) from error

    def _connection_failed(self, xid: Xid, connection: Any) -> None:
        # Record may already be gone or failed; nothing to refuse here
        self._branches.apply(xid, BranchEvent.CONNECTION_FAILED)
        self._bindings.unbind(connection)

        if self._current_xid == xid:
            self._clear_association()

        logger.error(
            "Connection failed, branch unusable",
            xid=str(xid),
            connection_id=self._connection_id(connection),
        )

    def _apply(self, xid: Xid, event: BranchEvent) -> None:
        result = self._branches.apply(xid, event)
        if not result.ok:
            raise error_for(result, xid, event)

    def _finish(self, xid: Xid, connection: Any) -> None:
        """Release binding, pin and association of a completed branch."""
        if self._bindings.bound_xid(connection) == xid:
            self._bindings.unbind(connection)

        self._bindings.unpin(xid)

        if self._current_xid == xid:
            self._clear_association()

    def _execute(
        self,
        connection: Any,
        command: str,
        operation: str,
        xid: Optional[Xid] = None,
    ) -> Any:
        """
        Run an XA command, translating failures.

        A connectivity failure moves the branch named by xid to FAILED.
        """
        logger.debug(
            "Executing XA command",
            command=command,
            connection_id=self._connection_id(connection),
        )

        try:
            return connection.execute_command(command)
        except (DatabaseError, OSError) as e:
            lost = self._connection_lost(connection, e)

            if lost and not isinstance(e, (ConnectionLostError, OSError)):
                error = ResourceManagerError(
                    f"{operation} failed: connection lost ({e})",
                    XAER_RMFAIL,
                    e,
                )
            else:
                error = self._dialect.translate_error(e, operation)

            if lost and xid is not None:
                self._connection_failed(xid, connection)

            raise error from e
