import asyncio
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest

from shielded_transfer.artifact_store import FileArtifactStore
from shielded_transfer.config import Credentials, EngineSettings, TransferSettings
from shielded_transfer.models import EventKind, WalletInfo
from shielded_transfer.session import EngineSession

WALLET_ID = "wallet-0001"
OTHER_WALLET_ID = "wallet-0002"
CHAIN_ID = 1
TOKEN_A = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"
TOKEN_B = "0xdAC17F958D2ee523a2206206994597C13D831ec7"


def balance_payload(bucket: str, tokens: List[Tuple[str, int]], wallet_id: str = WALLET_ID, chain_id: int = CHAIN_ID) -> Dict:
    """Engine-shaped balance callback payload"""
    return {
        'chain': {'type': 0, 'id': chain_id},
        'railgunWalletID': wallet_id,
        'balanceBucket': bucket,
        'erc20Amounts': [{'tokenAddress': addr, 'amount': str(amount)} for addr, amount in tokens],
    }


class FakeEngine:
    """
    In-memory engine with the single-callback-per-kind behaviour of the
    real one: registering again silently replaces the previous callback.
    """

    def __init__(self):
        self.callbacks: Dict[EventKind, Any] = {}
        self.registrations: Dict[EventKind, int] = {}
        self.scripted_events: List[Tuple[float, Dict]] = []
        self.refresh_error: Optional[Exception] = None
        self.refresh_calls: List[Tuple[int, List[str]]] = []
        self.gas_type = 2

        self.start = AsyncMock()
        self.stop = AsyncMock()
        self.set_loggers = MagicMock()
        self.load_provider = AsyncMock()
        self.create_wallet = AsyncMock(return_value=WalletInfo(id=WALLET_ID, address="0zk1qyexample"))
        self.get_evm_gas_type = MagicMock(side_effect=lambda network, public: self.gas_type)
        self.estimate_transfer_gas = AsyncMock(return_value=21000)
        self.generate_transfer_proof = AsyncMock(return_value="proof")
        self.populate_proved_transfer = AsyncMock(return_value={'transaction': {'to': '0xrelay', 'data': '0x01'}})
        self.refresh_spent_pois = AsyncMock()
        self.refresh_receive_pois = AsyncMock()
        self.generate_pois = AsyncMock()

    def set_event_callback(self, kind, callback):
        if callback is None:
            self.callbacks.pop(kind, None)
            return
        self.callbacks[kind] = callback
        self.registrations[kind] = self.registrations.get(kind, 0) + 1

    def emit(self, kind, payload):
        callback = self.callbacks.get(kind)
        if callback is not None:
            callback(payload)

    def script(self, *events: Tuple[float, Dict]):
        self.scripted_events.extend(events)

    async def refresh_balances(self, chain_id, wallet_ids):
        self.refresh_calls.append((chain_id, list(wallet_ids)))
        await asyncio.sleep(0)
        if self.refresh_error is not None:
            raise self.refresh_error
        loop = asyncio.get_running_loop()
        for delay, payload in self.scripted_events:
            loop.call_later(delay, self.emit, EventKind.BALANCE_UPDATE, payload)


class FakeProvider:
    def __init__(self):
        self.get_fee_data = AsyncMock(return_value={
            'gas_price': 20 * 10 ** 9,
            'max_fee_per_gas': 40 * 10 ** 9,
            'max_priority_fee_per_gas': 2 * 10 ** 9,
        })
        self.send_transaction = AsyncMock(return_value="0xabc")
        self.wait_for_confirmation = AsyncMock(return_value={'status': 1, 'blockNumber': 123})


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(
        mnemonic="test test test test test test test test test test test junk",
        encryption_key="0" * 64,
        rpc_url="http://localhost:8545",
        target_address="0zk1qytarget",
    )


@pytest.fixture
def session(engine, provider, credentials, tmp_path) -> EngineSession:
    """Session with the wallet already loaded (no start() needed)"""
    s = EngineSession(
        engine,
        provider,
        EngineSettings(chain_id=CHAIN_ID, db_path=str(tmp_path / "db")),
        credentials,
        artifact_store=FileArtifactStore(tmp_path / "artifacts"),
    )
    s.wallet = WalletInfo(id=WALLET_ID, address="0zk1qyexample")
    return s


@pytest.fixture
def transfer_settings() -> TransferSettings:
    return TransferSettings(retry_delay=0.0, refresh_balances_first=False, confirmation_timeout=5.0)
