"""Renewal domain service: upcoming-due notices, automatic charges and overdue notices."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol, Tuple
from zoneinfo import ZoneInfo

from ...config import DEFAULT_TIMEZONE
from ...database import DatabaseError
from .exceptions import PerEntityProcessingError
from .models import ChargeResult, Contract, Installment, RenewalAttempt, RenewalRunSummary
from .reconciler import oldest_overdue

logger = logging.getLogger(__name__)

MISSING_CARD_TOKEN = "No stored card token; manual payment required"


class LifecycleRepository(Protocol):
    """Read access to contracts and installments."""

    def list_all_contracts(self) -> List[Contract]:
        ...

    def list_installments_by_contract(self, contract_id: str) -> List[Installment]:
        ...


class PaymentGateway(Protocol):
    """External processor that charges a stored card.

    ``idempotency_key`` is scoped to the local calendar day, so it only stops a
    repeat charge within the same day. An implementation that reports success
    must also mark the installment paid (or see it marked paid before the next
    daily pass); otherwise the next renewal run charges the installment again.
    """

    def attempt_charge(
        self,
        contract: Contract,
        installment: Installment,
        *,
        idempotency_key: str,
    ) -> ChargeResult:
        ...


class LifecycleNotifier(Protocol):
    """Delivers lifecycle notices. Returning ``False`` means nothing was sent."""

    def notify_upcoming_due(
        self, contract: Contract, installment: Installment, *, idempotency_key: str
    ) -> Optional[bool]:
        ...

    def notify_overdue(
        self,
        contract: Contract,
        installment: Installment,
        *,
        days_overdue: int,
        idempotency_key: str,
    ) -> Optional[bool]:
        ...

    def notify_renewal_success(
        self,
        contract: Contract,
        installment: Installment,
        *,
        reference: Optional[str],
        idempotency_key: str,
    ) -> Optional[bool]:
        ...

    def notify_renewal_failure(
        self,
        contract: Contract,
        installment: Installment,
        *,
        reason: str,
        idempotency_key: str,
    ) -> Optional[bool]:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RenewalService:
    """Stateless business rules run by the scheduled lifecycle jobs."""

    repository: LifecycleRepository
    gateway: PaymentGateway
    notifier: LifecycleNotifier
    timezone_name: str = DEFAULT_TIMEZONE
    renewal_min_days_overdue: int = 1
    overdue_milestones: Tuple[int, ...] = ()
    clock: Callable[[], datetime] = field(default=_utcnow)

    # ------------------------------------------------------------------ helpers
    def _now(self, now: Optional[datetime]) -> datetime:
        current = now or self.clock()
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        return current

    def _local_date(self, moment: datetime) -> date:
        return moment.astimezone(ZoneInfo(self.timezone_name)).date()

    @staticmethod
    def _log_entity_failure(contract: Contract, operation: str, exc: Exception) -> None:
        error = PerEntityProcessingError(contract.id, operation, exc)
        logger.error(
            "%s",
            error,
            exc_info=exc,
            extra={"contract_id": contract.id, "operation": operation},
        )

    # ------------------------------------------------------------------ upcoming due
    def send_upcoming_due_notifications(self, days_ahead: int = 3, *, now: Optional[datetime] = None) -> int:
        """Notify contracts with an unpaid installment due exactly ``days_ahead`` local days from today."""

        current_time = self._now(now)
        target_day = self._local_date(current_time) + timedelta(days=days_ahead)
        sent = 0
        for contract in self.repository.list_all_contracts():
            if contract.is_cancelled:
                continue
            try:
                if self._send_upcoming_due(contract, target_day, days_ahead):
                    sent += 1
            except DatabaseError:
                raise
            except Exception as exc:
                self._log_entity_failure(contract, "upcoming_due_notification", exc)

        logger.info(
            "Upcoming due notifications sent: %d",
            sent,
            extra={"days_ahead": days_ahead, "target_day": target_day.isoformat(), "sent": sent},
        )
        return sent

    def _send_upcoming_due(self, contract: Contract, target_day: date, days_ahead: int) -> bool:
        due = [
            installment
            for installment in self.repository.list_installments_by_contract(contract.id)
            if not installment.is_paid and self._local_date(installment.due_date) == target_day
        ]
        if not due:
            return False
        installment = min(due, key=lambda item: item.due_date)
        key = f"upcoming:{contract.id}:{installment.id}:{days_ahead}d"
        return self.notifier.notify_upcoming_due(contract, installment, idempotency_key=key) is not False

    # ------------------------------------------------------------------ renewals
    def process_automatic_renewals(self, *, now: Optional[datetime] = None) -> RenewalRunSummary:
        """Attempt a card charge for every contract whose oldest unpaid installment is late enough."""

        current_time = self._now(now)
        summary = RenewalRunSummary()
        for contract in self.repository.list_all_contracts():
            if contract.is_cancelled or not contract.pays_by_card:
                summary.skipped += 1
                continue
            try:
                installment = self._renewal_candidate(contract, current_time)
            except DatabaseError:
                raise
            except Exception as exc:
                self._log_entity_failure(contract, "automatic_renewal", exc)
                summary.record(RenewalAttempt(contract_id=contract.id, success=False, error=str(exc)))
                continue
            if installment is None:
                summary.skipped += 1
                continue

            attempt = self._attempt_renewal(contract, installment, current_time)
            summary.record(attempt)
            self._notify_renewal_outcome(contract, installment, attempt, current_time)

        logger.info(
            "Automatic renewals processed: %d successful, %d failed",
            summary.successful,
            summary.failed,
            extra={
                "processed": summary.processed,
                "successful": summary.successful,
                "failed": summary.failed,
                "skipped": summary.skipped,
            },
        )
        return summary

    def _renewal_candidate(self, contract: Contract, now: datetime) -> Optional[Installment]:
        installments = self.repository.list_installments_by_contract(contract.id)
        oldest = oldest_overdue(installments, now)
        if oldest is None or oldest.days_overdue(now) < self.renewal_min_days_overdue:
            return None
        return oldest

    def _attempt_renewal(self, contract: Contract, installment: Installment, now: datetime) -> RenewalAttempt:
        if not contract.card_token:
            logger.warning(
                "Contract %s has no stored card token",
                contract.contract_number,
                extra={"contract_id": contract.id},
            )
            return RenewalAttempt(
                contract_id=contract.id,
                installment_id=installment.id,
                success=False,
                error=MISSING_CARD_TOKEN,
            )

        key = f"renewal:{contract.id}:{installment.id}:{self._local_date(now).isoformat()}"
        try:
            result = self.gateway.attempt_charge(contract, installment, idempotency_key=key)
        except DatabaseError:
            raise
        except Exception as exc:
            self._log_entity_failure(contract, "automatic_renewal", exc)
            result = ChargeResult(success=False, error_reason=f"{type(exc).__name__}: {exc}")

        if result.success:
            logger.info(
                "Automatic renewal charged contract %s",
                contract.contract_number,
                extra={"contract_id": contract.id, "installment_id": installment.id, "reference": result.reference},
            )
        else:
            logger.warning(
                "Automatic renewal declined for contract %s: %s",
                contract.contract_number,
                result.error_reason,
                extra={"contract_id": contract.id, "installment_id": installment.id},
            )
        return RenewalAttempt(
            contract_id=contract.id,
            installment_id=installment.id,
            success=result.success,
            reference=result.reference,
            error=None if result.success else (result.error_reason or "Charge declined"),
        )

    def _notify_renewal_outcome(
        self,
        contract: Contract,
        installment: Installment,
        attempt: RenewalAttempt,
        now: datetime,
    ) -> None:
        outcome = "success" if attempt.success else "failure"
        key = f"renewal-{outcome}:{contract.id}:{installment.id}:{self._local_date(now).isoformat()}"
        try:
            if attempt.success:
                self.notifier.notify_renewal_success(
                    contract, installment, reference=attempt.reference, idempotency_key=key
                )
            else:
                self.notifier.notify_renewal_failure(
                    contract, installment, reason=attempt.error or "Charge declined", idempotency_key=key
                )
        except Exception:
            # The charge outcome is already recorded.
            logger.exception(
                "Failed to send renewal %s notice",
                outcome,
                extra={"contract_id": contract.id, "installment_id": installment.id},
            )

    # ------------------------------------------------------------------ overdue
    def send_overdue_notifications(self, *, now: Optional[datetime] = None) -> int:
        """Notify each contract holding an overdue installment, at most once per local calendar day."""

        current_time = self._now(now)
        today = self._local_date(current_time)
        sent = 0
        for contract in self.repository.list_all_contracts():
            if contract.is_cancelled:
                continue
            try:
                if self._send_overdue(contract, current_time, today):
                    sent += 1
            except DatabaseError:
                raise
            except Exception as exc:
                self._log_entity_failure(contract, "overdue_notification", exc)

        logger.info("Overdue notifications sent: %d", sent, extra={"day": today.isoformat(), "sent": sent})
        return sent

    def _send_overdue(self, contract: Contract, now: datetime, today: date) -> bool:
        oldest = oldest_overdue(self.repository.list_installments_by_contract(contract.id), now)
        if oldest is None:
            return False
        days = oldest.days_overdue(now)
        if self.overdue_milestones and days not in self.overdue_milestones:
            return False
        key = f"overdue:{contract.id}:{today.isoformat()}"
        delivered = self.notifier.notify_overdue(contract, oldest, days_overdue=days, idempotency_key=key)
        return delivered is not False


__all__ = [
    "LifecycleNotifier",
    "LifecycleRepository",
    "MISSING_CARD_TOKEN",
    "PaymentGateway",
    "RenewalService",
]
