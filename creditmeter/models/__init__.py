from creditmeter.models.audit_log import AuditLog
from creditmeter.models.balance import UserBalance
from creditmeter.models.ledger_entry import CreditLedgerEntry
from creditmeter.models.purchase import PurchaseRecord
from creditmeter.models.session import (
    AwaitingSecondPhase,
    FirstPhaseReserved,
    GenerationSession,
    Idle,
    SecondPhaseReserved,
)

__all__ = [
    "AuditLog",
    "UserBalance",
    "CreditLedgerEntry",
    "PurchaseRecord",
    "GenerationSession",
    "Idle",
    "FirstPhaseReserved",
    "AwaitingSecondPhase",
    "SecondPhaseReserved",
]
