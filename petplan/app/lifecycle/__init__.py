"""Contract lifecycle domain: status reconciliation, renewals and lifecycle notices."""

from .exceptions import (
    ConnectionAcquisitionError,
    DatabaseError,
    PerEntityProcessingError,
    RetriesExhaustedError,
    UnknownJobError,
)
from .models import (
    BillingPeriod,
    ChargeResult,
    Contract,
    ContractStatus,
    Installment,
    InstallmentStatus,
    ReconciliationSummary,
    RenewalAttempt,
    RenewalRunSummary,
    StatusChange,
)
from .reconciler import ContractStatusReconciler, ContractStore, compute_target_status
from .renewal import LifecycleNotifier, LifecycleRepository, PaymentGateway, RenewalService

__all__ = [
    "BillingPeriod",
    "ChargeResult",
    "ConnectionAcquisitionError",
    "Contract",
    "ContractStatus",
    "ContractStatusReconciler",
    "ContractStore",
    "DatabaseError",
    "Installment",
    "InstallmentStatus",
    "LifecycleNotifier",
    "LifecycleRepository",
    "PaymentGateway",
    "PerEntityProcessingError",
    "ReconciliationSummary",
    "RenewalAttempt",
    "RenewalRunSummary",
    "RenewalService",
    "RetriesExhaustedError",
    "StatusChange",
    "UnknownJobError",
    "compute_target_status",
]
