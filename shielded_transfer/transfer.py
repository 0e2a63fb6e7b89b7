"""
Transfer Workflow

Private transfer as an ordered stage sequence:
1. Resolve fee model (once; shared by estimation and population)
2. Estimate gas
3. Generate proof (long-running, cancellable)
4. Populate transaction (fee data re-fetched here)
5. Broadcast
6. Confirm (unknown, not failed, on timeout)

An optional balance refresh runs first so the proof spends fresh UTXOs.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .config import TransferSettings
from .errors import ShieldedTransferError
from .executor import CancellationToken, Stage, StageContext, StageExecutor, retry_transient
from .gas import buffered_gas_limit, build_gas_details, resolve_gas_type
from .models import ErrorKind, StageResult, TransferRecipient, WorkflowRun


@dataclass
class TransferRequest:
    """Transfer request"""
    recipients: List[TransferRecipient]
    memo: Optional[str] = None
    request_id: str = field(default_factory=lambda: f"TX_{uuid.uuid4().hex[:8]}")
    requested_at: datetime = None

    def __post_init__(self):
        if not self.recipients:
            raise ValueError("Transfer needs at least one recipient")
        for recipient in self.recipients:
            if recipient.amount <= 0:
                raise ValueError(f"Transfer amount must be positive, got {recipient.amount}")
        if self.requested_at is None:
            self.requested_at = datetime.now(timezone.utc)


class _EngineStage(Stage):
    """Stage with access to the session and transfer settings"""

    def __init__(self, session, settings: TransferSettings):
        self.session = session
        self.settings = settings

    async def _fee_data(self):
        return await retry_transient(
            self.session.provider.get_fee_data,
            attempts=self.settings.retry_attempts,
            delay=self.settings.retry_delay,
            description="fee data fetch",
        )


class RefreshBalances(_EngineStage):
    name = "refresh-balances"

    async def execute(self, context: StageContext) -> StageResult:
        try:
            await self.session.refresh_balances([context.wallet_id])
        except ShieldedTransferError:
            raise
        except Exception as e:
            return StageResult.failure(ErrorKind.FAILURE, f"Balance refresh failed: {e}")
        return StageResult.success()


class ResolveFeeModel(_EngineStage):
    name = "resolve-fee-model"

    async def execute(self, context: StageContext) -> StageResult:
        gas_type = resolve_gas_type(
            self.session.engine,
            self.session.network_name,
            self.settings.send_with_public_wallet,
        )
        return StageResult.success(evm_gas_type=gas_type)


class EstimateGas(_EngineStage):
    name = "estimate-gas"

    async def execute(self, context: StageContext) -> StageResult:
        fee_data = await self._fee_data()
        # Estimation runs against placeholder details with a zero estimate
        gas_details = build_gas_details(context['evm_gas_type'], fee_data, 0, self.settings)
        try:
            gas_estimate = await self.session.engine.estimate_transfer_gas(
                txid_version=self.session.txid_version,
                network_name=self.session.network_name,
                wallet_id=context.wallet_id,
                encryption_key=self.session.credentials.encryption_key,
                memo=context['memo'],
                recipients=context['recipients'],
                gas_details=gas_details.to_engine(),
                send_with_public_wallet=self.settings.send_with_public_wallet,
            )
        except ShieldedTransferError:
            raise
        except Exception as e:
            return StageResult.failure(ErrorKind.FAILURE, f"Gas estimation rejected: {e}")

        gas_estimate = int(gas_estimate)
        logger.info(f"Gas estimate: {gas_estimate}")
        return StageResult.success(gas_estimate=gas_estimate, estimate_gas_details=gas_details)


class GenerateProof(_EngineStage):
    name = "generate-proof"

    def __init__(self, session, settings: TransferSettings, on_progress: Optional[Callable[[float], None]] = None):
        super().__init__(session, settings)
        self.on_progress = on_progress

    def _progress(self, fraction: float):
        logger.info(f"Proof progress: {fraction * 100:.0f}%")
        if self.on_progress:
            self.on_progress(fraction)

    async def execute(self, context: StageContext) -> StageResult:
        min_gas_price = context['estimate_gas_details'].min_gas_price
        call = self.session.engine.generate_transfer_proof(
            txid_version=self.session.txid_version,
            network_name=self.session.network_name,
            wallet_id=context.wallet_id,
            encryption_key=self.session.credentials.encryption_key,
            show_sender_address=self.settings.show_sender_address,
            memo=context['memo'],
            recipients=context['recipients'],
            send_with_public_wallet=self.settings.send_with_public_wallet,
            min_gas_price=min_gas_price,
            on_progress=self._progress,
        )
        try:
            proof = await context.cancellation.run(call)
        except ShieldedTransferError:
            raise
        except Exception as e:
            return StageResult.failure(ErrorKind.FAILURE, f"Proof generation failed: {e}")
        return StageResult.success(proof=proof)


class PopulateTransaction(_EngineStage):
    name = "populate-transaction"

    async def execute(self, context: StageContext) -> StageResult:
        # Prices may have moved since estimation; always re-fetch here
        fee_data = await self._fee_data()
        gas_estimate = context['gas_estimate']
        gas_details = build_gas_details(context['evm_gas_type'], fee_data, gas_estimate, self.settings)
        try:
            populated = await self.session.engine.populate_proved_transfer(
                txid_version=self.session.txid_version,
                network_name=self.session.network_name,
                wallet_id=context.wallet_id,
                show_sender_address=self.settings.show_sender_address,
                memo=context['memo'],
                recipients=context['recipients'],
                send_with_public_wallet=self.settings.send_with_public_wallet,
                min_gas_price=gas_details.min_gas_price,
                gas_details=gas_details.to_engine(),
            )
        except ShieldedTransferError:
            raise
        except Exception as e:
            return StageResult.failure(ErrorKind.FAILURE, f"Transaction population failed: {e}")

        transaction: Dict[str, Any] = dict(populated.get('transaction', populated))
        transaction['gasLimit'] = buffered_gas_limit(gas_estimate, self.settings.gas_limit_buffer_percent)
        return StageResult.success(transaction=transaction, transaction_gas_details=gas_details)


class Broadcast(_EngineStage):
    name = "broadcast"

    async def execute(self, context: StageContext) -> StageResult:
        try:
            tx_id = await retry_transient(
                lambda: self.session.provider.send_transaction(context['transaction']),
                attempts=self.settings.retry_attempts,
                delay=self.settings.retry_delay,
                description="broadcast",
            )
        except ShieldedTransferError:
            raise
        except Exception as e:
            return StageResult.failure(ErrorKind.FAILURE, f"Submission rejected: {e}")
        logger.info(f"Transaction sent! Hash: {tx_id}")
        return StageResult.success(tx_id=tx_id)


class Confirm(_EngineStage):
    name = "confirm"

    async def execute(self, context: StageContext) -> StageResult:
        tx_id = context['tx_id']
        timeout = context.get('confirmation_timeout') or self.settings.confirmation_timeout
        logger.info(f"Waiting for confirmation of {tx_id} (timeout {timeout:.0f}s)...")
        try:
            receipt = await context.cancellation.run(
                asyncio.wait_for(self.session.provider.wait_for_confirmation(tx_id, timeout), timeout)
            )
        except (asyncio.TimeoutError, TimeoutError):
            return StageResult.failure(
                ErrorKind.UNKNOWN_OUTCOME,
                f"Confirmation of {tx_id} not observed within {timeout:.0f}s; it may still confirm",
            )
        except ShieldedTransferError:
            raise
        except Exception as e:
            return StageResult.failure(ErrorKind.UNKNOWN_OUTCOME, f"Confirmation of {tx_id} unknown: {e}")
        return StageResult.success(receipt=receipt, confirmed=True)


class TransferWorkflow:
    """Private transfer driven through the stage executor"""

    OUTPUT_KEYS = ('tx_id',)

    def __init__(
        self,
        session,
        settings: Optional[TransferSettings] = None,
        executor: Optional[StageExecutor] = None,
    ):
        self.session = session
        self.settings = settings or TransferSettings()
        self.executor = executor or StageExecutor()

    def build_stages(
        self,
        refresh_balances_first: Optional[bool] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> List[Stage]:
        if refresh_balances_first is None:
            refresh_balances_first = self.settings.refresh_balances_first
        stages: List[Stage] = []
        if refresh_balances_first:
            stages.append(RefreshBalances(self.session, self.settings))
        stages.extend([
            ResolveFeeModel(self.session, self.settings),
            EstimateGas(self.session, self.settings),
            GenerateProof(self.session, self.settings, on_progress=on_progress),
            PopulateTransaction(self.session, self.settings),
            Broadcast(self.session, self.settings),
            Confirm(self.session, self.settings),
        ])
        return stages

    async def run(
        self,
        request: TransferRequest,
        cancellation: Optional[CancellationToken] = None,
        confirmation_timeout: Optional[float] = None,
        refresh_balances_first: Optional[bool] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> WorkflowRun:
        """
        Execute the transfer

        Args:
            request: Transfer request
            cancellation: Token that aborts proof generation / confirmation
            confirmation_timeout: Deadline for on-chain inclusion (seconds)
            refresh_balances_first: Override the configured pre-transfer refresh
            on_progress: Proof progress callback (fraction 0..1)

        Returns:
            WorkflowRun; output holds tx_id once broadcast succeeded
        """
        logger.info(f"Starting transfer: {request.request_id}")
        for recipient in request.recipients:
            logger.info(f"  {recipient.amount} of {recipient.token_address} -> {recipient.recipient_address}")

        context = StageContext(
            self.session.wallet_id,
            cancellation=cancellation,
            request_id=request.request_id,
            memo=request.memo if request.memo is not None else self.settings.memo,
            recipients=[r.to_engine() for r in request.recipients],
            confirmation_timeout=confirmation_timeout or self.settings.confirmation_timeout,
        )
        stages = self.build_stages(refresh_balances_first, on_progress)
        return await self.executor.run(stages, context, output_keys=self.OUTPUT_KEYS)
