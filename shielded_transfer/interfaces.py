"""
External collaborator contracts

The scanning/proving engine, the chain provider and the artifact cache are
not implemented here. These protocols describe exactly what the workflows
call on them; any object with matching methods can be plugged in.
"""

from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from .models import EventKind, WalletInfo

EngineCallback = Callable[[Mapping[str, Any]], None]
ProgressCallback = Callable[[float], None]


class ArtifactStore(Protocol):
    async def exists(self, key: str) -> bool: ...

    async def get(self, key: str) -> Optional[bytes]: ...

    async def put(self, key: str, data: bytes) -> None: ...

    async def remove(self, key: str) -> None: ...


class ShieldedEngine(Protocol):
    """Request/response and push surface of the shielded-pool engine"""

    async def start(
        self,
        wallet_source: str,
        db_path: str,
        artifact_store: ArtifactStore,
        poi_node_urls: Sequence[str],
    ) -> None: ...

    async def stop(self) -> None: ...

    def set_loggers(self, log: Callable[[str], None], error: Callable[[str], None]) -> None: ...

    async def load_provider(self, chain_id: int, rpc_url: str, network_name: str) -> None: ...

    async def create_wallet(
        self,
        encryption_key: str,
        mnemonic: str,
        creation_block: Optional[int],
    ) -> WalletInfo: ...

    def set_event_callback(self, kind: EventKind, callback: Optional[EngineCallback]) -> None:
        """Only one callback per kind is kept; registering again replaces it"""

    async def refresh_balances(self, chain_id: int, wallet_ids: List[str]) -> None: ...

    def get_evm_gas_type(self, network_name: str, send_with_public_wallet: bool) -> int: ...

    async def estimate_transfer_gas(
        self,
        *,
        txid_version: str,
        network_name: str,
        wallet_id: str,
        encryption_key: str,
        memo: str,
        recipients: List[Dict[str, Any]],
        gas_details: Dict[str, Any],
        send_with_public_wallet: bool,
    ) -> int: ...

    async def generate_transfer_proof(
        self,
        *,
        txid_version: str,
        network_name: str,
        wallet_id: str,
        encryption_key: str,
        show_sender_address: bool,
        memo: str,
        recipients: List[Dict[str, Any]],
        send_with_public_wallet: bool,
        min_gas_price: int,
        on_progress: ProgressCallback,
    ) -> Any: ...

    async def populate_proved_transfer(
        self,
        *,
        txid_version: str,
        network_name: str,
        wallet_id: str,
        show_sender_address: bool,
        memo: str,
        recipients: List[Dict[str, Any]],
        send_with_public_wallet: bool,
        min_gas_price: int,
        gas_details: Dict[str, Any],
    ) -> Dict[str, Any]: ...

    async def refresh_spent_pois(self, txid_version: str, network_name: str, wallet_id: str) -> None: ...

    async def refresh_receive_pois(self, txid_version: str, network_name: str, wallet_id: str) -> None: ...

    async def generate_pois(self, network_name: str, wallet_id: str) -> None: ...


class ChainProvider(Protocol):
    """Public chain access used to price, sign and submit transactions"""

    async def get_fee_data(self) -> Mapping[str, Optional[int]]: ...

    async def send_transaction(self, payload: Dict[str, Any]) -> str: ...

    async def wait_for_confirmation(self, tx_id: str, timeout: float) -> Any: ...
