"""Application wiring for the lifecycle services."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol
from zoneinfo import ZoneInfo

from ...config import DEFAULT_TIMEZONE, Settings
from ...database import Database
from ...mail import (
    EmailConfig,
    EmailProvider,
    LifecycleEmail,
    LifecycleMessage,
    create_email_provider,
    load_email_config,
    render_lifecycle_email,
)
from ..lifecycle import (
    ChargeResult,
    Contract,
    ContractStatusReconciler,
    Installment,
    LifecycleNotifier,
    PaymentGateway,
    RenewalService,
)
from ..lifecycle.repository import PostgresLifecycleRepository, PostgresNotificationLog

logger = logging.getLogger("lifecycle")

CHARGING_DISABLED_REASON = "Automatic charging is not configured"


class NotificationLog(Protocol):
    """Idempotency ledger for sent notices."""

    def claim(self, idempotency_key: str, *, contract_id: str, kind: str) -> bool:
        ...

    def release(self, idempotency_key: str) -> None:
        ...


def _format_amount(amount: Decimal) -> str:
    return f"R$ {amount:.2f}"


class EmailLifecycleNotifier(LifecycleNotifier):
    """Sends lifecycle notices by email, at most once per idempotency key."""

    def __init__(
        self,
        provider: EmailProvider,
        notification_log: NotificationLog,
        *,
        app_base_url: str = "",
        timezone_name: str = DEFAULT_TIMEZONE,
        grace_period_days: int = 15,
        cancellation_days: int = 60,
    ) -> None:
        self.provider = provider
        self.notification_log = notification_log
        self.app_base_url = app_base_url.rstrip("/")
        self.timezone_name = timezone_name
        self.grace_period_days = grace_period_days
        self.cancellation_days = cancellation_days

    def _context(self, contract: Contract, installment: Installment) -> Dict[str, Any]:
        due_local = installment.due_date.astimezone(ZoneInfo(self.timezone_name))
        return {
            "client_name": contract.client_name or "customer",
            "contract_number": contract.contract_number,
            "pet_name": contract.pet_name or "your pet",
            "plan_name": contract.plan_name or "pet plan",
            "installment_number": installment.installment_number,
            "amount": _format_amount(installment.amount or contract.amount),
            "due_date": due_local.strftime("%d/%m/%Y"),
            "portal_url": f"{self.app_base_url}/customer/contracts/{contract.id}",
            "grace_period_days": self.grace_period_days,
            "cancellation_days": self.cancellation_days,
        }

    def _deliver(
        self,
        kind: LifecycleEmail,
        contract: Contract,
        installment: Installment,
        idempotency_key: str,
        **extra: Any,
    ) -> bool:
        if not contract.client_email:
            logger.warning(
                "Contract %s has no client email; %s notice skipped",
                contract.contract_number,
                kind.value,
                extra={"contract_id": contract.id},
            )
            return False
        if not self.notification_log.claim(idempotency_key, contract_id=contract.id, kind=kind.value):
            logger.debug("Notice %s already sent", idempotency_key)
            return False

        context = self._context(contract, installment)
        context.update(extra)
        try:
            subject, text_body, html_body = render_lifecycle_email(kind, context)
            self.provider.deliver(
                LifecycleMessage(
                    recipient=contract.client_email,
                    subject=subject,
                    text_body=text_body,
                    html_body=html_body,
                    notice_key=idempotency_key,
                    contract_id=contract.id,
                )
            )
        except Exception:
            self.notification_log.release(idempotency_key)
            raise
        logger.info(
            "Lifecycle email sent",
            extra={
                "contract_id": contract.id,
                "notification_kind": kind.value,
                "idempotency_key": idempotency_key,
                **self.provider.describe(),
            },
        )
        return True

    def notify_upcoming_due(
        self, contract: Contract, installment: Installment, *, idempotency_key: str
    ) -> bool:
        return self._deliver(LifecycleEmail.UPCOMING_DUE, contract, installment, idempotency_key)

    def notify_overdue(
        self,
        contract: Contract,
        installment: Installment,
        *,
        days_overdue: int,
        idempotency_key: str,
    ) -> bool:
        return self._deliver(
            LifecycleEmail.OVERDUE, contract, installment, idempotency_key, days_overdue=days_overdue
        )

    def notify_renewal_success(
        self,
        contract: Contract,
        installment: Installment,
        *,
        reference: Optional[str],
        idempotency_key: str,
    ) -> bool:
        return self._deliver(
            LifecycleEmail.RENEWAL_SUCCESS, contract, installment, idempotency_key, reference=reference or "-"
        )

    def notify_renewal_failure(
        self,
        contract: Contract,
        installment: Installment,
        *,
        reason: str,
        idempotency_key: str,
    ) -> bool:
        return self._deliver(LifecycleEmail.RENEWAL_FAILURE, contract, installment, idempotency_key, reason=reason)


class DisabledPaymentGateway(PaymentGateway):
    """Gateway used until a card processor is wired in; declines every charge."""

    def attempt_charge(
        self,
        contract: Contract,
        installment: Installment,
        *,
        idempotency_key: str,
    ) -> ChargeResult:
        logger.info(
            "Charge for contract %s not attempted: %s",
            contract.contract_number,
            CHARGING_DISABLED_REASON,
            extra={"contract_id": contract.id, "idempotency_key": idempotency_key},
        )
        return ChargeResult(success=False, error_reason=CHARGING_DISABLED_REASON)


@dataclass
class LifecycleServices:
    """Collaborators built for one process."""

    repository: PostgresLifecycleRepository
    notification_log: PostgresNotificationLog
    notifier: LifecycleNotifier
    reconciler: ContractStatusReconciler
    renewal_service: RenewalService


def build_lifecycle_services(
    settings: Settings,
    database: Database,
    *,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[LifecycleNotifier] = None,
    email_config: Optional[EmailConfig] = None,
) -> LifecycleServices:
    repository = PostgresLifecycleRepository(database)
    notification_log = PostgresNotificationLog(database)
    if notifier is None:
        config = email_config or load_email_config()
        notifier = EmailLifecycleNotifier(
            create_email_provider(config),
            notification_log,
            app_base_url=config.app_base_url,
            timezone_name=settings.cron_timezone,
            grace_period_days=settings.grace_period_days,
            cancellation_days=settings.cancellation_days,
        )
    reconciler = ContractStatusReconciler(
        repository,
        grace_period_days=settings.grace_period_days,
        cancellation_days=settings.cancellation_days,
    )
    renewal_service = RenewalService(
        repository=repository,
        gateway=gateway or DisabledPaymentGateway(),
        notifier=notifier,
        timezone_name=settings.cron_timezone,
        renewal_min_days_overdue=settings.renewal_min_days_overdue,
        overdue_milestones=settings.overdue_milestones,
    )
    return LifecycleServices(
        repository=repository,
        notification_log=notification_log,
        notifier=notifier,
        reconciler=reconciler,
        renewal_service=renewal_service,
    )


__all__ = [
    "CHARGING_DISABLED_REASON",
    "DisabledPaymentGateway",
    "EmailLifecycleNotifier",
    "LifecycleServices",
    "NotificationLog",
    "build_lifecycle_services",
]
