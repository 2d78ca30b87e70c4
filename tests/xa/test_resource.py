"""
Tests for the XAResource facade.
"""

import pytest

from xaresource.xa import (
    XA_OK,
    XA_RDONLY,
    BranchState,
    ConnectionBusy,
    ConnectionLostError,
    DatabaseError,
    DuplicateBranch,
    HeuristicOutcome,
    InvalidArgument,
    ProtocolViolation,
    ResourceManagerError,
    ResourceManagerConfig,
    TransactionRolledBack,
    UnknownTransaction,
    XADataSource,
    XAFlags,
)
from xaresource.xa.errors import XA_HEURHAZ, XA_RBDEADLOCK, XAER_RMERR, XAER_RMFAIL

FULL_SCAN = XAFlags.TMSTARTRSCAN | XAFlags.TMENDRSCAN


@pytest.fixture
def xa_conn(datasource):
    conn = datasource.get_xa_connection()
    yield conn
    conn.close()


@pytest.fixture
def resource(xa_conn):
    return xa_conn.get_xa_resource()


class TestValidation:
    """Test input validation."""

    def test_rejects_non_xid(self, resource):
        """Test operations reject anything but an Xid."""
        with pytest.raises(InvalidArgument):
            resource.start(("1", b"g", b"b"), XAFlags.TMNOFLAGS)

        with pytest.raises(InvalidArgument):
            resource.commit(None)

    @pytest.mark.parametrize("flags", [
        XAFlags.TMJOIN | XAFlags.TMRESUME,
        XAFlags.TMSUCCESS,
        XAFlags.TMSTARTRSCAN,
        12345,
        None,
    ])
    def test_rejects_start_flags(self, resource, make_xid, flags):
        """Test unrecognized start flag combinations."""
        with pytest.raises(InvalidArgument):
            resource.start(make_xid(), flags)

    @pytest.mark.parametrize("flags", [
        XAFlags.TMNOFLAGS,
        XAFlags.TMSUCCESS | XAFlags.TMFAIL,
        XAFlags.TMJOIN,
    ])
    def test_rejects_end_flags(self, resource, make_xid, flags):
        """Test unrecognized end flag combinations."""
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)

        with pytest.raises(InvalidArgument):
            resource.end(xid, flags)

    def test_rejects_recover_flags(self, resource):
        """Test unrecognized recover flags."""
        with pytest.raises(InvalidArgument):
            resource.recover(XAFlags.TMJOIN)

    def test_validation_happens_before_state_change(self, resource, datasource, make_xid):
        """Test a rejected call leaves no record behind."""
        xid = make_xid()

        with pytest.raises(InvalidArgument):
            resource.start(xid, XAFlags.TMFAIL)

        assert datasource.branches.get(xid) is None


class TestStartEnd:
    """Test branch association."""

    def test_start_binds_connection(self, resource, datasource, server, make_xid):
        """Test start issues XA START and binds the connection."""
        xid = make_xid()

        resource.start(xid, XAFlags.TMNOFLAGS)

        assert datasource.branches.state_of(xid) == BranchState.ACTIVE
        assert datasource.bindings.bound_xid(resource.physical) == xid
        assert resource.current_xid == xid
        assert server.commands[-1][1] == f"XA START {xid.to_sql()}"

    def test_duplicate_start_other_connection(self, datasource, make_xid):
        """Test starting an Xid already active on another connection."""
        xid = make_xid()
        conn1 = datasource.get_xa_connection()
        conn2 = datasource.get_xa_connection()

        conn1.get_xa_resource().start(xid, XAFlags.TMNOFLAGS)

        with pytest.raises(DuplicateBranch):
            conn2.get_xa_resource().start(xid, XAFlags.TMNOFLAGS)

        # The first branch is untouched
        assert datasource.branches.get(xid).connection is conn1.physical

        conn1.close()
        conn2.close()

    def test_start_while_associated(self, resource, make_xid):
        """Test starting a second branch before ending the first."""
        resource.start(make_xid(), XAFlags.TMNOFLAGS)

        with pytest.raises(ProtocolViolation):
            resource.start(make_xid(), XAFlags.TMNOFLAGS)

    def test_end_unknown(self, resource, make_xid):
        """Test ending an untracked branch."""
        with pytest.raises(UnknownTransaction):
            resource.end(make_xid(), XAFlags.TMSUCCESS)

    def test_end_not_bound_here(self, datasource, make_xid):
        """Test end from a resource not associated with the branch."""
        xid = make_xid()
        conn1 = datasource.get_xa_connection()
        conn2 = datasource.get_xa_connection()
        conn1.get_xa_resource().start(xid, XAFlags.TMNOFLAGS)

        with pytest.raises(ProtocolViolation):
            conn2.get_xa_resource().end(xid, XAFlags.TMSUCCESS)

        conn1.close()
        conn2.close()

    def test_end_releases_connection(self, resource, datasource, make_xid):
        """Test end unbinds the connection."""
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)
        resource.end(xid, XAFlags.TMSUCCESS)

        assert datasource.bindings.bound_xid(resource.physical) is None
        assert resource.current_xid is None
        assert datasource.branches.state_of(xid) == BranchState.ENDED

    def test_failed_start_leaves_no_record(self, resource, datasource, server, make_xid):
        """Test a start refused by the server is not tracked."""
        xid = make_xid()
        server.inject_error("XA START", DatabaseError("boom", 1401))

        with pytest.raises(ResourceManagerError) as exc_info:
            resource.start(xid, XAFlags.TMNOFLAGS)

        assert exc_info.value.error_code == XAER_RMERR
        assert datasource.branches.get(xid) is None
        assert datasource.bindings.bound_xid(resource.physical) is None

    def test_end_rolled_back_by_server(self, resource, datasource, server, make_xid):
        """Test end reporting a deadlock rollback."""
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)
        server.inject_error("XA END", DatabaseError("deadlock", 1614))

        with pytest.raises(TransactionRolledBack) as exc_info:
            resource.end(xid, XAFlags.TMSUCCESS)

        assert exc_info.value.error_code == XA_RBDEADLOCK
        assert datasource.branches.get(xid) is None
        assert resource.current_xid is None


class TestSuspendResume:
    """Test suspend and resume."""

    def test_resume_after_suspend(self, resource, datasource, make_xid):
        """Test a suspended branch resumes on the same connection."""
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)
        resource.end(xid, XAFlags.TMSUSPEND)

        assert datasource.branches.get(xid).suspended

        resource.start(xid, XAFlags.TMRESUME)

        assert datasource.branches.state_of(xid) == BranchState.ACTIVE

    def test_resume_of_ended_branch(self, resource, make_xid):
        """Test resume requires a suspended branch."""
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)
        resource.end(xid, XAFlags.TMSUCCESS)

        with pytest.raises(ProtocolViolation):
            resource.start(xid, XAFlags.TMRESUME)

    def test_end_suspended_branch(self, resource, datasource, make_xid):
        """Test a suspended branch can be ended without resuming."""
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)
        resource.end(xid, XAFlags.TMSUSPEND)

        resource.end(xid, XAFlags.TMSUCCESS)

        assert datasource.branches.state_of(xid) == BranchState.ENDED
        assert resource.prepare(xid) == XA_OK

    def test_resume_unknown(self, resource, make_xid):
        """Test resume of an untracked branch."""
        with pytest.raises(UnknownTransaction):
            resource.start(make_xid(), XAFlags.TMRESUME)


class TestJoin:
    """Test join with and without pinning."""

    def test_join_without_pinning(self, resource, datasource, make_xid):
        """Test join of an ended branch fails without pinning."""
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)
        resource.end(xid, XAFlags.TMSUCCESS)

        with pytest.raises(DuplicateBranch):
            resource.start(xid, XAFlags.TMJOIN)

        assert datasource.branches.state_of(xid) == BranchState.ENDED

    def test_join_with_pinning_same_connection(self, pinned_datasource, server, make_xid):
        """Test join reuses the pinned connection."""
        xid = make_xid()
        xa_conn = pinned_datasource.get_xa_connection()
        resource = xa_conn.get_xa_resource()

        resource.start(xid, XAFlags.TMNOFLAGS)
        resource.end(xid, XAFlags.TMSUCCESS)
        resource.start(xid, XAFlags.TMJOIN)

        assert server.commands[-1][1] == f"XA START {xid.to_sql()} RESUME"
        assert pinned_datasource.branches.state_of(xid) == BranchState.ACTIVE

        xa_conn.close()

    def test_join_of_active_branch(self, pinned_datasource, make_xid):
        """Test join while the branch is still active elsewhere."""
        xid = make_xid()
        conn1 = pinned_datasource.get_xa_connection()
        conn2 = pinned_datasource.get_xa_connection()
        conn1.get_xa_resource().start(xid, XAFlags.TMNOFLAGS)

        with pytest.raises(ProtocolViolation):
            conn2.get_xa_resource().start(xid, XAFlags.TMJOIN)

        conn1.close()
        conn2.close()


class TestPrepare:
    """Test prepare votes and failures."""

    def test_prepare_before_end(self, resource, make_xid):
        """Test prepare of an active branch."""
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)

        with pytest.raises(ProtocolViolation):
            resource.prepare(xid)

    def test_prepare_unknown(self, resource, make_xid):
        """Test prepare of an untracked branch."""
        with pytest.raises(UnknownTransaction):
            resource.prepare(make_xid())

    def test_prepare_failure_rolls_back(self, xa_conn, datasource, server, make_xid):
        """Test a failed prepare triggers the implicit rollback."""
        resource = xa_conn.get_xa_resource()
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)
        xa_conn.get_connection().execute("INSERT INTO xatable VALUES (1)")
        resource.end(xid, XAFlags.TMSUCCESS)
        server.inject_error("XA PREPARE", DatabaseError("disk full", 1401))

        with pytest.raises(ResourceManagerError) as exc_info:
            resource.prepare(xid)

        assert exc_info.value.rolled_back
        assert server.commands[-1][1] == f"XA ROLLBACK {xid.to_sql()}"
        assert datasource.branches.get(xid) is None
        assert server.committed_rows() == []
        assert resource.recover(FULL_SCAN) == []

    def test_prepare_rollback_only(self, resource, datasource, server, make_xid):
        """Test a branch ended with TMFAIL cannot be prepared."""
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)
        resource.end(xid, XAFlags.TMFAIL)

        with pytest.raises(TransactionRolledBack):
            resource.prepare(xid)

        assert datasource.branches.get(xid) is None
        assert server.commands[-1][1] == f"XA ROLLBACK {xid.to_sql()}"

    def test_read_only_vote(self, server, make_xid):
        """Test read-only optimization for branches without writes."""
        datasource = XADataSource(server.connect, read_only_optimization=True)
        xa_conn = datasource.get_xa_connection()
        resource = xa_conn.get_xa_resource()
        xid = make_xid()

        resource.start(xid, XAFlags.TMNOFLAGS)
        xa_conn.get_connection().execute("SELECT 1")
        resource.end(xid, XAFlags.TMSUCCESS)

        assert resource.prepare(xid) == XA_RDONLY
        assert datasource.branches.get(xid) is None
        assert resource.recover(FULL_SCAN) == []

        xa_conn.close()

    def test_read_only_disabled_for_writes(self, server, make_xid):
        """Test branches with writes vote XA_OK."""
        datasource = XADataSource(server.connect, read_only_optimization=True)
        xa_conn = datasource.get_xa_connection()
        resource = xa_conn.get_xa_resource()
        xid = make_xid()

        resource.start(xid, XAFlags.TMNOFLAGS)
        xa_conn.get_connection().execute("INSERT INTO xatable VALUES (4)")
        resource.end(xid, XAFlags.TMSUCCESS)

        assert resource.prepare(xid) == XA_OK

        xa_conn.close()


class TestCommitRollback:
    """Test completion."""

    def test_two_phase_commit_requires_prepare(self, resource, make_xid):
        """Test commit(one_phase=False) of an ended branch."""
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)
        resource.end(xid, XAFlags.TMSUCCESS)

        with pytest.raises(ProtocolViolation):
            resource.commit(xid, one_phase=False)

    def test_one_phase_commit_of_prepared(self, resource, make_xid):
        """Test one-phase commit after prepare."""
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)
        resource.end(xid, XAFlags.TMSUCCESS)
        resource.prepare(xid)

        with pytest.raises(ProtocolViolation):
            resource.commit(xid, one_phase=True)

    def test_replayed_commit_is_unknown(self, resource, make_xid):
        """Test committing twice."""
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)
        resource.end(xid, XAFlags.TMSUCCESS)
        resource.prepare(xid)
        resource.commit(xid, one_phase=False)

        with pytest.raises(UnknownTransaction):
            resource.commit(xid, one_phase=False)

    def test_replayed_rollback_is_unknown(self, resource, make_xid):
        """Test rolling back twice."""
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)
        resource.end(xid, XAFlags.TMSUCCESS)
        resource.rollback(xid)

        with pytest.raises(UnknownTransaction):
            resource.rollback(xid)

    def test_one_phase_unknown(self, resource, make_xid):
        """Test one-phase commit of an untracked branch."""
        with pytest.raises(UnknownTransaction):
            resource.commit(make_xid(), one_phase=True)

    def test_rollback_active_branch(self, xa_conn, datasource, server, make_xid):
        """Test rollback without end ends the branch first."""
        resource = xa_conn.get_xa_resource()
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)
        xa_conn.get_connection().execute("INSERT INTO xatable VALUES (9)")

        resource.rollback(xid)

        assert [text for _, text in server.commands[-2:]] == [
            f"XA END {xid.to_sql()}",
            f"XA ROLLBACK {xid.to_sql()}",
        ]
        assert datasource.branches.get(xid) is None
        assert datasource.bindings.bound_xid(resource.physical) is None
        assert resource.current_xid is None
        assert server.committed_rows() == []

    def test_one_phase_commit_rollback_only(self, resource, make_xid):
        """Test one-phase commit of a TMFAIL branch."""
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)
        resource.end(xid, XAFlags.TMFAIL)

        with pytest.raises(TransactionRolledBack):
            resource.commit(xid, one_phase=True)

    def test_commit_failure_keeps_prepared(self, resource, datasource, server, make_xid):
        """Test a database error leaves the branch prepared."""
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)
        resource.end(xid, XAFlags.TMSUCCESS)
        resource.prepare(xid)
        server.inject_error("XA COMMIT", DatabaseError("lock wait", 1401))

        with pytest.raises(ResourceManagerError):
            resource.commit(xid)

        assert datasource.branches.state_of(xid) == BranchState.PREPARED

        resource.commit(xid)
        assert datasource.branches.get(xid) is None


class TestHeuristics:
    """Test heuristic completion and forget."""

    def test_prepared_branch_resolved_externally(self, resource, datasource, server, make_xid):
        """Test a prepared branch completed behind the coordinator's back."""
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)
        resource.end(xid, XAFlags.TMSUCCESS)
        resource.prepare(xid)
        server.resolve_externally(xid, commit=False)

        with pytest.raises(HeuristicOutcome) as exc_info:
            resource.commit(xid)

        assert exc_info.value.error_code == XA_HEURHAZ
        assert datasource.branches.state_of(xid) == BranchState.HEURISTICALLY_COMPLETED

        with pytest.raises(ProtocolViolation):
            resource.rollback(xid)

        resource.forget(xid)
        assert datasource.branches.get(xid) is None

    def test_forget_requires_heuristic(self, resource, make_xid):
        """Test forget of a prepared branch."""
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)
        resource.end(xid, XAFlags.TMSUCCESS)
        resource.prepare(xid)

        with pytest.raises(ProtocolViolation):
            resource.forget(xid)

    def test_forget_unknown(self, resource, make_xid):
        """Test forget of an untracked branch."""
        with pytest.raises(UnknownTransaction):
            resource.forget(make_xid())


class TestConnectionFailure:
    """Test connectivity failures."""

    def test_failure_marks_branch(self, xa_conn, datasource, make_xid):
        """Test a lost connection makes the branch unusable."""
        resource = xa_conn.get_xa_resource()
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)
        xa_conn.physical.kill()

        with pytest.raises(ResourceManagerError) as exc_info:
            resource.end(xid, XAFlags.TMSUCCESS)

        assert exc_info.value.error_code == XAER_RMFAIL
        assert exc_info.value.connection_failed
        assert datasource.branches.state_of(xid) == BranchState.FAILED

        with pytest.raises(ResourceManagerError):
            resource.prepare(xid)

    def test_failure_during_sql(self, xa_conn, datasource, make_xid):
        """Test a lost connection while running SQL."""
        resource = xa_conn.get_xa_resource()
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)
        xa_conn.physical.kill()

        with pytest.raises(ConnectionLostError):
            xa_conn.get_connection().execute("INSERT INTO xatable VALUES (1)")

        assert datasource.branches.state_of(xid) == BranchState.FAILED
        assert resource.current_xid is None

    def test_prepare_connection_lost(self, resource, datasource, server, make_xid):
        """Test no implicit rollback is attempted on a dead connection."""
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)
        resource.end(xid, XAFlags.TMSUCCESS)
        server.inject_error("XA PREPARE", ConnectionLostError("gone", 2013))

        with pytest.raises(ResourceManagerError) as exc_info:
            resource.prepare(xid)

        assert exc_info.value.error_code == XAER_RMFAIL
        assert not exc_info.value.rolled_back
        assert datasource.branches.state_of(xid) == BranchState.FAILED


    def test_server_error_on_dead_connection(self, xa_conn, datasource, server, monkeypatch, make_xid):
        """Test a server error from an invalid connection counts as connection loss."""
        resource = xa_conn.get_xa_resource()
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)
        server.inject_error("XA END", DatabaseError("Lost connection during query", 2013))
        monkeypatch.setattr(xa_conn.physical, "is_valid", lambda: False)

        with pytest.raises(ResourceManagerError) as exc_info:
            resource.end(xid, XAFlags.TMSUCCESS)

        assert exc_info.value.error_code == XAER_RMFAIL
        assert datasource.branches.state_of(xid) == BranchState.FAILED

    def test_server_error_on_live_connection(self, xa_conn, datasource, server, make_xid):
        """Test a server error from a valid connection leaves the branch usable."""
        resource = xa_conn.get_xa_resource()
        xid = make_xid()
        resource.start(xid, XAFlags.TMNOFLAGS)
        server.inject_error("XA END", DatabaseError("lock wait timeout", 1401))

        with pytest.raises(ResourceManagerError) as exc_info:
            resource.end(xid, XAFlags.TMSUCCESS)

        assert exc_info.value.error_code == XAER_RMERR
        assert datasource.branches.state_of(xid) == BranchState.ACTIVE


class TestRoutingAndIdentity:
    """Test SQL routing and resource identity."""

    def test_sql_on_bound_connection_from_other_resource(self, pinned_datasource, make_xid):
        """Test a physical connection running a joined branch is busy."""
        xid = make_xid()
        conn1 = pinned_datasource.get_xa_connection()
        conn2 = pinned_datasource.get_xa_connection()
        res1 = conn1.get_xa_resource()
        res2 = conn2.get_xa_resource()

        res1.start(xid, XAFlags.TMNOFLAGS)
        res1.end(xid, XAFlags.TMSUCCESS)
        res2.start(xid, XAFlags.TMJOIN)

        with pytest.raises(ConnectionBusy):
            conn1.get_connection().execute("SELECT 1")

        with pytest.raises(ConnectionBusy):
            res1.start(make_xid(), XAFlags.TMNOFLAGS)

        conn1.close()
        conn2.close()

    def test_completion_through_other_resource(self, datasource, server, make_xid):
        """Test an ended branch is prepared on the session that holds it."""
        xid = make_xid()
        conn_a = datasource.get_xa_connection()
        conn_b = datasource.get_xa_connection()
        res_a = conn_a.get_xa_resource()
        res_b = conn_b.get_xa_resource()
        session_a = conn_a.physical.connection_id

        res_a.start(xid, XAFlags.TMNOFLAGS)
        conn_a.get_connection().execute("INSERT INTO xatable VALUES (1)")
        res_a.end(xid, XAFlags.TMSUCCESS)

        assert res_b.prepare(xid) == XA_OK
        assert server.commands[-1] == (session_a, f"XA PREPARE {xid.to_sql()}")
        assert datasource.branches.state_of(xid) == BranchState.PREPARED

        res_b.commit(xid)

        assert server.committed_rows() == [1]

        # Session A is free for new work
        res_a.start(make_xid(), XAFlags.TMNOFLAGS)

        conn_a.close()
        conn_b.close()

    def test_rollback_through_other_resource(self, datasource, server, make_xid):
        """Test an ended branch is rolled back on the session that holds it."""
        xid = make_xid()
        conn_a = datasource.get_xa_connection()
        conn_b = datasource.get_xa_connection()
        res_a = conn_a.get_xa_resource()
        session_a = conn_a.physical.connection_id

        res_a.start(xid, XAFlags.TMNOFLAGS)
        conn_a.get_connection().execute("INSERT INTO xatable VALUES (2)")
        res_a.end(xid, XAFlags.TMSUCCESS)

        conn_b.get_xa_resource().rollback(xid)

        assert server.commands[-1] == (session_a, f"XA ROLLBACK {xid.to_sql()}")
        assert datasource.branches.get(xid) is None
        assert server.live == set()

        conn_a.close()
        conn_b.close()

    def test_is_same_rm(self, server):
        """Test resource manager identity."""
        ds1 = XADataSource(server.connect, ResourceManagerConfig(host="db1", database="a"))
        ds2 = XADataSource(server.connect, ResourceManagerConfig(host="DB1", database="a"))
        ds3 = XADataSource(server.connect, ResourceManagerConfig(host="db2", database="a"))

        r1 = ds1.get_xa_connection().get_xa_resource()
        r1b = ds1.get_xa_connection().get_xa_resource()
        r2 = ds2.get_xa_connection().get_xa_resource()
        r3 = ds3.get_xa_connection().get_xa_resource()

        assert r1.is_same_rm(r1b)
        assert r1.is_same_rm(r2)
        assert not r1.is_same_rm(r3)
        assert not r1.is_same_rm(object())

    def test_transaction_timeout(self, resource):
        """Test timeouts are stored but not enforced."""
        assert resource.get_transaction_timeout() == 0
        assert resource.set_transaction_timeout(30) is False
        assert resource.get_transaction_timeout() == 30

        with pytest.raises(InvalidArgument):
            resource.set_transaction_timeout(-1)

    def test_closed_connection_drops_branches(self, datasource, make_xid):
        """Test closing an XA connection forgets its branches."""
        xid = make_xid()
        xa_conn = datasource.get_xa_connection()
        xa_conn.get_xa_resource().start(xid, XAFlags.TMNOFLAGS)

        xa_conn.close()

        assert datasource.branches.get(xid) is None
        with pytest.raises(ProtocolViolation):
            xa_conn.get_connection()
