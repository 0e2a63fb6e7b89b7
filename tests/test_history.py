"""Tests for the SQLite run journal"""

import pytest

from shielded_transfer.history import RunHistoryDB
from shielded_transfer.models import (
    ErrorKind,
    POIRefreshState,
    RunStatus,
    StageRecord,
    StageState,
    WorkflowRun,
)
from shielded_transfer.reconciliation import ReconciliationResult

from conftest import OTHER_WALLET_ID, WALLET_ID


@pytest.fixture
def db():
    history = RunHistoryDB(":memory:")
    yield history
    history.close()


def _failed_run(wallet_id: str = WALLET_ID) -> WorkflowRun:
    return WorkflowRun(
        wallet_id=wallet_id,
        stages=[
            StageRecord("estimate-gas", StageState.COMPLETED, 0.4),
            StageRecord("broadcast", StageState.COMPLETED, 0.2),
            StageRecord("confirm", StageState.FAILED, 5.0, ErrorKind.UNKNOWN_OUTCOME, "no receipt"),
        ],
        status=RunStatus.FAILED,
        failed_stage="confirm",
        error_kind=ErrorKind.UNKNOWN_OUTCOME,
        detail="no receipt",
        output={'tx_id': "0xabc"},
    )


def test_record_and_read_back_run(db):
    run = _failed_run()

    assert db.record_run(run)

    row = db.get_run(run.run_id)
    assert row['status'] == "failed"
    assert row['failed_stage'] == "confirm"
    assert row['tx_id'] == "0xabc"
    assert row['outcome_unknown'] == 1
    assert row['escalate'] == 0

    attempts = db.get_stage_attempts(run.run_id)
    assert [a['stage'] for a in attempts] == ["estimate-gas", "broadcast", "confirm"]
    assert attempts[2]['error_kind'] == "unknown_outcome"


def test_duplicate_run_is_rejected(db):
    run = _failed_run()

    assert db.record_run(run)
    assert not db.record_run(run)
    assert len(db.get_stage_attempts(run.run_id)) == 3


def test_reconciliation_warnings_attach_to_run(db):
    run = _failed_run()
    db.record_run(run)
    result = ReconciliationResult(
        state=POIRefreshState(wallet_id=WALLET_ID, generation_triggered=True),
        steps=[
            StageRecord("refresh-spent-pois", StageState.FAILED, 0.1, ErrorKind.FAILURE, "node 503"),
            StageRecord("refresh-receive-pois", StageState.COMPLETED, 0.1),
            StageRecord("generate-pois", StageState.COMPLETED, 0.1),
        ],
        warnings=["refresh-spent-pois: node 503"],
    )

    assert db.record_reconciliation(run.run_id, result)

    warnings = db.get_poi_warnings(run.run_id)
    assert [(w['step'], w['message']) for w in warnings] == [("refresh-spent-pois", "node 503")]


def test_recent_runs_filter_by_wallet(db):
    db.record_run(_failed_run(WALLET_ID))
    db.record_run(_failed_run(OTHER_WALLET_ID))

    assert len(db.get_recent_runs()) == 2
    only_other = db.get_recent_runs(wallet_id=OTHER_WALLET_ID)
    assert [r['wallet_id'] for r in only_other] == [OTHER_WALLET_ID]
