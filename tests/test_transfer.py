"""Tests for the transfer workflow stages"""

import asyncio

import pytest

from shielded_transfer.errors import EngineError, TransientError
from shielded_transfer.executor import CancellationToken
from shielded_transfer.gas import build_gas_details, buffered_gas_limit
from shielded_transfer.models import ErrorKind, EVMGasType, RunStatus, StageState, TransferRecipient
from shielded_transfer.transfer import TransferRequest, TransferWorkflow

from conftest import TOKEN_A, WALLET_ID

GWEI = 10 ** 9


@pytest.fixture
def request_():
    return TransferRequest(
        recipients=[TransferRecipient(TOKEN_A, 10 ** 15, "0zk1qytarget")],
        memo="rent",
    )


@pytest.fixture
def workflow(session, transfer_settings):
    return TransferWorkflow(session, transfer_settings)


@pytest.mark.asyncio
async def test_successful_transfer_runs_every_stage(workflow, engine, provider, request_):
    run = await workflow.run(request_)

    assert run.status is RunStatus.COMPLETED
    assert run.output == {'tx_id': "0xabc"}
    assert run.wallet_id == WALLET_ID
    assert [r.name for r in run.stages] == [
        "resolve-fee-model", "estimate-gas", "generate-proof",
        "populate-transaction", "broadcast", "confirm",
    ]
    assert all(r.state is StageState.COMPLETED for r in run.stages)
    # One fee model lookup, fee data fetched for estimation and population
    assert engine.get_evm_gas_type.call_count == 1
    assert provider.get_fee_data.await_count == 2
    provider.wait_for_confirmation.assert_awaited_once()


@pytest.mark.asyncio
async def test_eip1559_gas_details_and_buffered_limit(workflow, engine, provider, request_):
    await workflow.run(request_)

    populate_kwargs = engine.populate_proved_transfer.await_args.kwargs
    assert populate_kwargs['gas_details'] == {
        'evmGasType': 2,
        'gasEstimate': 21000,
        'maxFeePerGas': 40 * GWEI,
        'maxPriorityFeePerGas': 2 * GWEI,
    }
    assert populate_kwargs['min_gas_price'] == 40 * GWEI

    sent = provider.send_transaction.await_args.args[0]
    assert sent['gasLimit'] == 25200
    assert sent['to'] == '0xrelay'


@pytest.mark.asyncio
async def test_legacy_network_uses_gas_price(workflow, engine, request_):
    engine.gas_type = 0

    await workflow.run(request_)

    estimate_kwargs = engine.estimate_transfer_gas.await_args.kwargs
    assert estimate_kwargs['gas_details'] == {'evmGasType': 0, 'gasEstimate': 0, 'gasPrice': 20 * GWEI}
    assert engine.generate_transfer_proof.await_args.kwargs['min_gas_price'] == 20 * GWEI
    assert estimate_kwargs['memo'] == "rent"


@pytest.mark.asyncio
async def test_rejected_estimate_stops_before_proof(workflow, engine, request_):
    engine.estimate_transfer_gas.side_effect = RuntimeError("execution reverted")

    run = await workflow.run(request_)

    assert run.status is RunStatus.FAILED
    assert run.failed_stage == "estimate-gas"
    assert run.error_kind is ErrorKind.FAILURE
    assert not run.escalate
    engine.generate_transfer_proof.assert_not_awaited()
    assert run.stage("generate-proof").state is StageState.PENDING


@pytest.mark.asyncio
async def test_engine_error_escalates(workflow, engine, request_):
    engine.estimate_transfer_gas.side_effect = EngineError("engine not started")

    run = await workflow.run(request_)

    assert run.escalate
    assert run.error_kind is ErrorKind.FATAL


@pytest.mark.asyncio
async def test_unsupported_gas_type_fails_first_stage(workflow, engine, request_):
    engine.gas_type = 7

    run = await workflow.run(request_)

    assert run.failed_stage == "resolve-fee-model"
    engine.estimate_transfer_gas.assert_not_awaited()


@pytest.mark.asyncio
async def test_cancellation_during_proof(workflow, engine, request_):
    async def slow_proof(**kwargs):
        await asyncio.sleep(10)
        return "proof"

    engine.generate_transfer_proof.side_effect = slow_proof
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.05, token.cancel, "user abort")

    run = await workflow.run(request_, cancellation=token)

    assert run.failed_stage == "generate-proof"
    assert run.error_kind is ErrorKind.CANCELLED
    assert not run.escalate
    assert engine.populate_proved_transfer.await_count == 0


@pytest.mark.asyncio
async def test_confirmation_timeout_is_unknown_outcome(workflow, provider, request_):
    async def never_confirms(tx_id, timeout):
        await asyncio.sleep(10)

    provider.wait_for_confirmation.side_effect = never_confirms

    run = await workflow.run(request_, confirmation_timeout=0.05)

    assert run.status is RunStatus.FAILED
    assert run.failed_stage == "confirm"
    assert run.outcome_unknown
    assert not run.escalate
    assert run.output == {'tx_id': "0xabc"}


@pytest.mark.asyncio
async def test_transient_broadcast_error_is_retried(workflow, provider, request_):
    provider.send_transaction.side_effect = [TransientError("502 Bad Gateway"), "0xdef"]

    run = await workflow.run(request_)

    assert run.succeeded
    assert run.output['tx_id'] == "0xdef"
    assert provider.send_transaction.await_count == 2


@pytest.mark.asyncio
async def test_persistent_transient_error_fails_without_escalation(workflow, provider, request_):
    provider.get_fee_data.side_effect = TransientError("rate limited")

    run = await workflow.run(request_)

    assert run.failed_stage == "estimate-gas"
    assert run.error_kind is ErrorKind.TRANSIENT
    assert not run.escalate
    assert provider.get_fee_data.await_count == 3


@pytest.mark.asyncio
async def test_balance_refresh_stage_runs_first_when_enabled(workflow, engine, request_):
    run = await workflow.run(request_, refresh_balances_first=True)

    assert run.stages[0].name == "refresh-balances"
    assert engine.refresh_calls == [(1, [WALLET_ID])]
    assert run.succeeded


@pytest.mark.asyncio
async def test_proof_progress_is_forwarded(workflow, engine, request_):
    seen = []

    async def proof_with_progress(**kwargs):
        kwargs['on_progress'](0.5)
        kwargs['on_progress'](1.0)
        return "proof"

    engine.generate_transfer_proof.side_effect = proof_with_progress

    await workflow.run(request_, on_progress=seen.append)

    assert seen == [0.5, 1.0]


def test_request_validation():
    with pytest.raises(ValueError):
        TransferRequest(recipients=[])
    with pytest.raises(ValueError):
        TransferRequest(recipients=[TransferRecipient(TOKEN_A, 0, "0zk1")])
    assert TransferRequest(recipients=[TransferRecipient(TOKEN_A, 1, "0zk1")]).request_id.startswith("TX_")


def test_gas_details_fall_back_to_defaults(transfer_settings):
    details = build_gas_details(EVMGasType.TYPE2, {'maxFeePerGas': None}, 0, transfer_settings)

    assert details.max_fee_per_gas == transfer_settings.default_max_fee
    assert details.max_priority_fee_per_gas == transfer_settings.default_priority_fee
    assert buffered_gas_limit(100000, 120) == 120000
