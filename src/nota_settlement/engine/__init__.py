from .exceptions import (
    SettlementBaseError,
    ChainReadError,
    ConfirmationTimeoutError,
    SubmissionError,
    UnknownTokenError,
    ConfigurationError,
    InvalidTransition,
)
from .attempt import SettlementAttempt, allowed_transitions
from .events import BaseEvent, EventBus, PhaseChangedEvent, SettlementCompletedEvent

__all__ = [
    "SettlementBaseError",
    "ChainReadError",
    "ConfirmationTimeoutError",
    "SubmissionError",
    "UnknownTokenError",
    "ConfigurationError",
    "InvalidTransition",
    "SettlementAttempt",
    "allowed_transitions",
    "BaseEvent",
    "EventBus",
    "PhaseChangedEvent",
    "SettlementCompletedEvent",
]
