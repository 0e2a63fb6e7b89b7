"""
Reconciliation Manager

Best-effort POI bookkeeping after a transfer attempt. The three steps are
independent: each one is attempted even when an earlier one failed, and
every failure is downgraded to a warning.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from loguru import logger

from .executor import Stage, StageContext, execute_stage
from .models import ErrorKind, POIRefreshState, StageRecord, StageResult, StageState


class _PoiStage(Stage):
    flag: str = ""

    def __init__(self, session):
        self.session = session

    async def execute(self, context: StageContext) -> StageResult:
        try:
            await self.call(context.wallet_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return StageResult.failure(ErrorKind.FAILURE, f"{type(e).__name__}: {e}")
        return StageResult.success()

    async def call(self, wallet_id: str):
        raise NotImplementedError


class RefreshSpentPOIs(_PoiStage):
    name = "refresh-spent-pois"
    flag = "spent_refreshed"

    async def call(self, wallet_id: str):
        await self.session.engine.refresh_spent_pois(self.session.txid_version, self.session.network_name, wallet_id)


class RefreshReceivePOIs(_PoiStage):
    name = "refresh-receive-pois"
    flag = "receive_refreshed"

    async def call(self, wallet_id: str):
        await self.session.engine.refresh_receive_pois(self.session.txid_version, self.session.network_name, wallet_id)


class GeneratePOIs(_PoiStage):
    name = "generate-pois"
    flag = "generation_triggered"

    async def call(self, wallet_id: str):
        await self.session.engine.generate_pois(self.session.network_name, wallet_id)


@dataclass
class ReconciliationResult:
    """Outcome of one reconciliation pass; never fatal"""
    state: POIRefreshState
    steps: List[StageRecord] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    finished_at: Optional[datetime] = None

    @property
    def clean(self) -> bool:
        return not self.warnings


class ReconciliationManager:
    """Refresh spent/receive POI status and trigger POI proof generation"""

    def __init__(self, session, steps: Optional[List[_PoiStage]] = None):
        self.session = session
        self.steps = steps or [
            RefreshSpentPOIs(session),
            RefreshReceivePOIs(session),
            GeneratePOIs(session),
        ]

    async def run(self, wallet_id: Optional[str] = None) -> ReconciliationResult:
        """
        Attempt every step once

        Args:
            wallet_id: Wallet to reconcile (defaults to the session wallet)

        Returns:
            ReconciliationResult with one warning per failed step
        """
        wallet_id = wallet_id or self.session.wallet_id
        logger.info("--- Starting POI update ---")

        result = ReconciliationResult(state=POIRefreshState(wallet_id=wallet_id))
        context = StageContext(wallet_id)

        for step in self.steps:
            record = StageRecord(name=step.name)
            result.steps.append(record)
            outcome = await execute_stage(step, context, record, failure_level="WARNING")
            if record.state is StageState.COMPLETED:
                result.state.mark(step.flag)
            else:
                warning = f"{step.name}: {outcome.detail}"
                result.warnings.append(warning)
                logger.warning(f"⚠ POI step failed (continuing): {warning}")

        result.finished_at = datetime.now(timezone.utc)
        if result.clean:
            logger.info("✓ POI status refreshed and proof generation triggered")
        else:
            logger.warning(f"⚠ POI update finished with {len(result.warnings)} warning(s)")
        return result
