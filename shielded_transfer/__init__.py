"""
Shielded Transfer

Balance aggregation and private transfer orchestration on top of a
shielded-pool engine.

Components:
- event_bus: single engine registration per event kind, in-process fan-out
- aggregator: balance burst aggregation with quiescence + ceiling timers
- executor: ordered stage runner with per-stage failure policy
- transfer: estimate -> prove -> populate -> broadcast -> confirm
- reconciliation: best-effort POI refresh after every transfer attempt
- session: explicit engine lifecycle handle
- history: SQLite run journal

Failure Policy:
1. Failure - run halts, system stays usable
2. Fatal - run halts, engine session must be restarted
3. Cancelled - caller aborted a long-running stage
4. Unknown outcome - confirmation timed out, funds may still move
"""

from .aggregator import BalanceAggregator
from .artifact_store import FileArtifactStore
from .config import Settings, load_credentials, load_settings
from .event_bus import EventBusAdapter, Subscription
from .executor import CancellationToken, Stage, StageContext, StageExecutor
from .history import RunHistoryDB
from .interfaces import ArtifactStore, ChainProvider, ShieldedEngine
from .models import (
    BalanceBucket,
    BalanceEvent,
    BalanceSnapshot,
    ErrorKind,
    EventKind,
    RunStatus,
    StageResult,
    TokenAmount,
    TransferRecipient,
    WorkflowRun,
)
from .reconciliation import ReconciliationManager, ReconciliationResult
from .session import EngineSession, graceful_shutdown
from .transfer import TransferRequest, TransferWorkflow

__all__ = [
    # Event intake
    'EventBusAdapter',
    'Subscription',
    'BalanceAggregator',

    # Workflows
    'Stage',
    'StageContext',
    'StageExecutor',
    'CancellationToken',
    'TransferWorkflow',
    'TransferRequest',
    'ReconciliationManager',
    'ReconciliationResult',

    # Session and storage
    'EngineSession',
    'graceful_shutdown',
    'FileArtifactStore',
    'RunHistoryDB',
    'ShieldedEngine',
    'ChainProvider',
    'ArtifactStore',
    'Settings',
    'load_settings',
    'load_credentials',

    # Models
    'BalanceBucket',
    'BalanceEvent',
    'BalanceSnapshot',
    'TokenAmount',
    'TransferRecipient',
    'StageResult',
    'ErrorKind',
    'EventKind',
    'RunStatus',
    'WorkflowRun',
]

__version__ = '1.0.0'
