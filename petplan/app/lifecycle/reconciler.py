"""Recomputes every contract's status from its installment history."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Protocol, Tuple

from ...database import DatabaseError
from .exceptions import PerEntityProcessingError
from .models import Contract, ContractStatus, Installment, ReconciliationSummary, StatusChange

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_DAYS = 15
DEFAULT_CANCELLATION_DAYS = 60


class ContractStore(Protocol):
    """Storage operations the reconciler depends on."""

    def list_all_contracts(self) -> List[Contract]:
        ...

    def list_installments_by_contract(self, contract_id: str) -> List[Installment]:
        ...

    def update_contract_status(self, contract_id: str, status: ContractStatus) -> object:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def oldest_overdue(installments: Iterable[Installment], now: datetime) -> Optional[Installment]:
    """Unpaid installment with the earliest due date before ``now``."""

    overdue = [installment for installment in installments if installment.is_overdue(now)]
    if not overdue:
        return None
    return min(overdue, key=lambda installment: installment.due_date)


def compute_target_status(
    installments: Iterable[Installment],
    now: datetime,
    *,
    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS,
    cancellation_days: int = DEFAULT_CANCELLATION_DAYS,
) -> Tuple[ContractStatus, Optional[int]]:
    """Return the status implied by ``installments`` and the days overdue that drove it.

    Only the oldest overdue installment matters. Up to ``grace_period_days`` late
    keeps the contract active, up to ``cancellation_days`` suspends it and
    anything later cancels it.
    """

    oldest = oldest_overdue(installments, now)
    if oldest is None:
        return ContractStatus.ACTIVE, None
    days = oldest.days_overdue(now)
    if days > cancellation_days:
        return ContractStatus.CANCELLED, days
    if days > grace_period_days:
        return ContractStatus.SUSPENDED, days
    return ContractStatus.ACTIVE, days


class ContractStatusReconciler:
    """Evaluates the status state machine once per contract per pass."""

    def __init__(
        self,
        repository: ContractStore,
        *,
        grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS,
        cancellation_days: int = DEFAULT_CANCELLATION_DAYS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if cancellation_days < grace_period_days:
            raise ValueError("cancellation_days must not be shorter than grace_period_days")
        self.repository = repository
        self.grace_period_days = grace_period_days
        self.cancellation_days = cancellation_days
        self._clock = clock or _utcnow

    def reconcile(self, *, now: Optional[datetime] = None) -> ReconciliationSummary:
        current_time = now or self._clock()
        if current_time.tzinfo is None:
            current_time = current_time.replace(tzinfo=timezone.utc)

        summary = ReconciliationSummary()
        for contract in self.repository.list_all_contracts():
            if contract.is_cancelled:
                summary.skipped += 1
                continue
            summary.evaluated += 1
            try:
                change = self._reconcile_contract(contract, current_time)
            except DatabaseError:
                raise
            except Exception as exc:
                error = PerEntityProcessingError(contract.id, "reconcile_status", exc)
                summary.failed += 1
                logger.error(
                    "%s",
                    error,
                    exc_info=exc,
                    extra={"contract_id": contract.id, "operation": error.operation},
                )
                continue
            if change is not None:
                summary.updated += 1
                summary.changes.append(change)

        logger.info(
            "Status reconciliation finished: %d contract(s) updated",
            summary.updated,
            extra={
                "evaluated": summary.evaluated,
                "updated": summary.updated,
                "skipped": summary.skipped,
                "failed": summary.failed,
            },
        )
        return summary

    def _reconcile_contract(self, contract: Contract, now: datetime) -> Optional[StatusChange]:
        installments = self.repository.list_installments_by_contract(contract.id)
        target, days = compute_target_status(
            installments,
            now,
            grace_period_days=self.grace_period_days,
            cancellation_days=self.cancellation_days,
        )
        if target == contract.status:
            return None

        self.repository.update_contract_status(contract.id, target)
        logger.info(
            "Contract %s: %s -> %s",
            contract.contract_number,
            contract.status.value,
            target.value,
            extra={
                "contract_id": contract.id,
                "previous_status": contract.status.value,
                "new_status": target.value,
                "days_overdue": days,
            },
        )
        return StatusChange(
            contract_id=contract.id,
            contract_number=contract.contract_number,
            previous_status=contract.status,
            new_status=target,
            days_overdue=days,
        )


__all__ = [
    "ContractStatusReconciler",
    "ContractStore",
    "DEFAULT_CANCELLATION_DAYS",
    "DEFAULT_GRACE_PERIOD_DAYS",
    "compute_target_status",
    "oldest_overdue",
]
