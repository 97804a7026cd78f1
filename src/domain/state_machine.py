# src/domain/state_machine.py

from enum import Enum
from typing import Dict, Set

from src.domain.exceptions import InvalidStateTransitionError


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class NotificationStage(str, Enum):
    PREPARING = "PREPARING"
    VALIDATING = "VALIDATING"
    SENDING = "SENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class _StateMachine:
    """
    Shared transition table logic.
    Subclasses define the status enum and the legal transitions.
    """

    _STATUS_TYPE: type[Enum]
    _ALLOWED_TRANSITIONS: Dict[Enum, Set[Enum]]

    @classmethod
    def can_transition(cls, from_status, to_status) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(cls, from_status, to_status) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def get_allowed_transitions(cls, status) -> Set:
        cls._ensure_valid_status(status)
        return cls._ALLOWED_TRANSITIONS.get(status, set())

    @classmethod
    def _ensure_valid_status(cls, status) -> None:
        if not isinstance(status, cls._STATUS_TYPE):
            raise TypeError(
                f"Expected {cls._STATUS_TYPE.__name__}, got {type(status)}"
            )


class TransactionStateMachine(_StateMachine):
    """
    Lifecycle of one payment attempt.
    A transaction is immutable once it leaves PENDING.
    """

    _STATUS_TYPE = TransactionStatus
    _ALLOWED_TRANSITIONS: Dict[TransactionStatus, Set[TransactionStatus]] = {
        TransactionStatus.PENDING: {
            TransactionStatus.SUCCESS,
            TransactionStatus.FAILED,
            TransactionStatus.CANCELLED,
        },
        TransactionStatus.SUCCESS: set(),
        TransactionStatus.FAILED: set(),
        TransactionStatus.CANCELLED: set(),
    }


class NotificationStateMachine(_StateMachine):
    """
    Lifecycle of one notification attempt on one channel.
    Any non-terminal stage may fail.
    """

    _STATUS_TYPE = NotificationStage
    _ALLOWED_TRANSITIONS: Dict[NotificationStage, Set[NotificationStage]] = {
        NotificationStage.PREPARING: {
            NotificationStage.VALIDATING,
            NotificationStage.FAILED,
        },
        NotificationStage.VALIDATING: {
            NotificationStage.SENDING,
            NotificationStage.FAILED,
        },
        NotificationStage.SENDING: {
            NotificationStage.SENT,
            NotificationStage.FAILED,
        },
        NotificationStage.SENT: set(),
        NotificationStage.FAILED: set(),
    }
