"""
Error taxonomy

Every exception carries an ErrorKind so the stage executor can turn a
raised error into the matching StageResult without guessing.
"""

from typing import Optional

from .models import ErrorKind


class ShieldedTransferError(Exception):
    """Base error with a classification"""
    kind: ErrorKind = ErrorKind.FAILURE

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class ConfigError(ShieldedTransferError):
    kind = ErrorKind.FATAL


class TransientError(ShieldedTransferError):
    """Network hiccup; safe to retry inside a stage"""
    kind = ErrorKind.TRANSIENT


class EngineError(ShieldedTransferError):
    """Engine or session level problem; the session should be torn down"""
    kind = ErrorKind.FATAL


class AggregationError(EngineError):
    """Balance refresh failed before any balance event arrived"""


class EstimationError(ShieldedTransferError):
    pass


class ProofError(ShieldedTransferError):
    pass


class PopulateError(ShieldedTransferError):
    pass


class BroadcastError(ShieldedTransferError):
    pass


class ConfirmationTimeout(ShieldedTransferError):
    """Transaction was sent but inclusion was not observed before the deadline"""
    kind = ErrorKind.UNKNOWN_OUTCOME


class PoiError(ShieldedTransferError):
    pass


class StageCancelled(ShieldedTransferError):
    kind = ErrorKind.CANCELLED
