"""
Shielded Transfer Models

Value types shared by the aggregator, the stage executor and the workflows:
- Balance events and snapshots
- Stage results and run records
- Gas details for the two fee models
- POI refresh bookkeeping
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from types import MappingProxyType
from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Tuple


class BalanceBucket(str, Enum):
    """Balance category reported by the engine"""
    SPENDABLE = "Spendable"
    SHIELD_PENDING = "ShieldPending"
    SHIELD_BLOCKED = "ShieldBlocked"
    PROOF_SUBMITTED = "ProofSubmitted"
    MISSING_INTERNAL_POI = "MissingInternalPOI"
    MISSING_EXTERNAL_POI = "MissingExternalPOI"
    SPENT = "Spent"

    @classmethod
    def parse(cls, value: Any) -> "BalanceBucket":
        if isinstance(value, cls):
            return value
        for bucket in cls:
            if bucket.value == value or bucket.name == value:
                return bucket
        raise ValueError(f"Unknown balance bucket: {value!r}")


class EventKind(str, Enum):
    """Push notifications the engine can deliver"""
    BALANCE_UPDATE = "balance_update"
    POI_PROOF_PROGRESS = "poi_proof_progress"
    MERKLETREE_SCAN = "merkletree_scan"


class ErrorKind(str, Enum):
    """Error taxonomy used in stage results and run records"""
    TRANSIENT = "transient"
    FAILURE = "failure"
    FATAL = "fatal"
    CANCELLED = "cancelled"
    UNKNOWN_OUTCOME = "unknown_outcome"


class StageState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class EVMGasType(int, Enum):
    """Transaction fee model (legacy, access-list legacy, EIP-1559)"""
    TYPE0 = 0
    TYPE1 = 1
    TYPE2 = 2

    @property
    def is_eip1559(self) -> bool:
        return self is EVMGasType.TYPE2


@dataclass(frozen=True)
class TokenAmount:
    """ERC20 amount inside a balance bucket"""
    token_address: str
    amount: int

    def __post_init__(self):
        # Engines hand amounts over as decimal or hex strings as often as ints
        if not isinstance(self.amount, int):
            object.__setattr__(self, 'amount', parse_amount(self.amount))


def parse_amount(value: Any) -> int:
    """
    Parse a base-unit amount

    Hex only with a 0x prefix; decimal text may carry leading zeros or an
    exponent ("007", "1e18", "5.0") but must be integral.

    Raises:
        ValueError: not an integral amount
    """
    if isinstance(value, int):
        return value
    text = str(value).strip()
    unsigned = text.lstrip('+-')
    if unsigned[:2].lower() == '0x':
        return int(text, 16)
    try:
        number = Decimal(text)
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
    if not number.is_finite() or number != number.to_integral_value():
        raise ValueError(f"Amount must be a whole number of base units: {value!r}")
    return int(number)


@dataclass(frozen=True)
class BalanceEvent:
    """Complete-bucket balance notification emitted by the engine"""
    chain_id: int
    wallet_id: str
    bucket: BalanceBucket
    tokens: Tuple[TokenAmount, ...] = ()

    def positive_tokens(self) -> Tuple[TokenAmount, ...]:
        return tuple(t for t in self.tokens if t.amount > 0)

    @classmethod
    def from_engine(cls, payload: Mapping[str, Any]) -> "BalanceEvent":
        """
        Build an event from the engine's loosely typed callback payload

        Args:
            payload: dict with chain, railgunWalletID, balanceBucket, erc20Amounts

        Returns:
            BalanceEvent
        """
        chain = payload.get('chain') or {}
        chain_id = chain.get('id') if isinstance(chain, Mapping) else payload.get('chain_id')
        tokens = tuple(
            TokenAmount(
                token_address=t.get('tokenAddress') or t.get('token_address'),
                amount=t.get('amount', 0),
            )
            for t in payload.get('erc20Amounts', payload.get('tokens', []))
        )
        return cls(
            chain_id=int(chain_id),
            wallet_id=payload.get('railgunWalletID') or payload.get('wallet_id'),
            bucket=BalanceBucket.parse(payload.get('balanceBucket') or payload.get('bucket')),
            tokens=tokens,
        )


class BalanceSnapshot(Mapping):
    """
    Finalized balances per bucket

    Read-only mapping of bucket -> tuple of TokenAmount. Only strictly
    positive amounts are ever stored.
    """

    def __init__(self, buckets: Optional[Mapping[BalanceBucket, Tuple[TokenAmount, ...]]] = None):
        cleaned = {}
        for bucket, tokens in (buckets or {}).items():
            positive = tuple(t for t in tokens if t.amount > 0)
            if positive:
                cleaned[bucket] = positive
        self._buckets = MappingProxyType(cleaned)

    def __getitem__(self, bucket: BalanceBucket) -> Tuple[TokenAmount, ...]:
        return self._buckets[bucket]

    def __iter__(self):
        return iter(self._buckets)

    def __len__(self) -> int:
        return len(self._buckets)

    def __repr__(self):
        return f"BalanceSnapshot({dict(self._buckets)!r})"

    def to_dict(self) -> Dict[str, List[Dict[str, str]]]:
        return {
            bucket.value: [
                {'token_address': t.token_address, 'amount': str(t.amount)}
                for t in tokens
            ]
            for bucket, tokens in self._buckets.items()
        }


@dataclass(frozen=True)
class StageResult:
    """
    Tagged outcome of one stage

    Use the Success/Failure/Fatal constructors rather than building it directly.
    """
    ok: bool
    output: Mapping[str, Any] = field(default_factory=dict)
    kind: Optional[ErrorKind] = None
    detail: Optional[str] = None
    fatal: bool = False

    @classmethod
    def success(cls, **output) -> "StageResult":
        return cls(ok=True, output=output)

    @classmethod
    def failure(cls, kind: ErrorKind, detail: str) -> "StageResult":
        return cls(ok=False, kind=kind, detail=detail)

    @classmethod
    def fatal_error(cls, kind: ErrorKind, detail: str) -> "StageResult":
        return cls(ok=False, kind=kind, detail=detail, fatal=True)

    @property
    def is_cancelled(self) -> bool:
        return self.kind is ErrorKind.CANCELLED


Success = StageResult.success
Failure = StageResult.failure
Fatal = StageResult.fatal_error


@dataclass
class StageRecord:
    """Observed state of one stage inside a run"""
    name: str
    state: StageState = StageState.PENDING
    duration_seconds: Optional[float] = None
    error_kind: Optional[ErrorKind] = None
    detail: Optional[str] = None


@dataclass
class WorkflowRun:
    """Result of one executor run"""
    wallet_id: str
    started_at: datetime = None
    stages: List[StageRecord] = field(default_factory=list)
    status: RunStatus = RunStatus.PENDING
    failed_stage: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    detail: Optional[str] = None
    escalate: bool = False
    output: Dict[str, Any] = field(default_factory=dict)
    finished_at: Optional[datetime] = None

    def __post_init__(self):
        if self.started_at is None:
            self.started_at = datetime.now(timezone.utc)

    @property
    def run_id(self) -> str:
        return f"{self.wallet_id}:{self.started_at.isoformat()}"

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.COMPLETED

    @property
    def outcome_unknown(self) -> bool:
        """True when funds may or may not have moved (confirmation timed out)"""
        return self.error_kind is ErrorKind.UNKNOWN_OUTCOME

    @property
    def total_seconds(self) -> float:
        return sum(s.duration_seconds or 0.0 for s in self.stages)

    def stage(self, name: str) -> StageRecord:
        for record in self.stages:
            if record.name == name:
                return record
        raise KeyError(name)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['run_id'] = self.run_id
        data['started_at'] = self.started_at.isoformat()
        if self.finished_at:
            data['finished_at'] = self.finished_at.isoformat()
        return data


@dataclass
class POIRefreshState:
    """Per-wallet POI bookkeeping; flags only ever flip from False to True"""
    wallet_id: str
    spent_refreshed: bool = False
    receive_refreshed: bool = False
    generation_triggered: bool = False

    def mark(self, flag: str):
        if not hasattr(self, flag) or flag == 'wallet_id':
            raise AttributeError(flag)
        setattr(self, flag, True)


@dataclass(frozen=True)
class TransferRecipient:
    token_address: str
    amount: int
    recipient_address: str

    def to_engine(self) -> Dict[str, Any]:
        return {
            'tokenAddress': self.token_address,
            'amount': self.amount,
            'recipientAddress': self.recipient_address,
        }


@dataclass(frozen=True)
class GasDetails:
    """Gas parameters for one fee model"""
    evm_gas_type: EVMGasType
    gas_estimate: int
    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None

    @property
    def min_gas_price(self) -> int:
        """Overall batch minimum gas price the engine expects"""
        if self.evm_gas_type.is_eip1559:
            return self.max_fee_per_gas
        return self.gas_price

    def to_engine(self) -> Dict[str, Any]:
        data = {'evmGasType': int(self.evm_gas_type), 'gasEstimate': self.gas_estimate}
        if self.evm_gas_type.is_eip1559:
            data['maxFeePerGas'] = self.max_fee_per_gas
            data['maxPriorityFeePerGas'] = self.max_priority_fee_per_gas
        else:
            data['gasPrice'] = self.gas_price
        return data


@dataclass(frozen=True)
class WalletInfo:
    id: str
    address: str
