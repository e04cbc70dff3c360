from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import List

import pytest

from petplan.app.lifecycle import Contract, ContractStatus, Installment
from petplan.app.services.lifecycle import (
    CHARGING_DISABLED_REASON,
    DisabledPaymentGateway,
    EmailLifecycleNotifier,
)
from petplan.mail import (
    DevPrintProvider,
    EmailProvider,
    LifecycleEmail,
    LifecycleMessage,
    NOTICE_KEY_HEADER,
    SMTPProvider,
    create_email_provider,
    load_email_config,
    render_lifecycle_email,
)


class RecordingProvider(EmailProvider):
    name = "recording"

    def __init__(self) -> None:
        super().__init__(from_email="billing@petplan.test")
        self.sent: List[LifecycleMessage] = []
        self.fail = False

    def deliver(self, message: LifecycleMessage) -> None:
        if self.fail:
            raise ConnectionRefusedError("smtp unavailable")
        self.sent.append(message)


def _contract(**overrides) -> Contract:
    fields = {
        "id": "c1",
        "contract_number": "CT-0001",
        "status": ContractStatus.ACTIVE,
        "monthly_amount": Decimal("129.90"),
        "client_name": "Ana",
        "client_email": "ana@example.com",
        "pet_name": "Thor",
        "plan_name": "Plano Completo",
    }
    fields.update(overrides)
    return Contract(**fields)


def _installment() -> Installment:
    # 01:00 UTC on the 14th is the 13th in Sao Paulo.
    return Installment(
        id="i1",
        contract_id="c1",
        installment_number=4,
        due_date=datetime(2025, 3, 14, 1, 0, tzinfo=timezone.utc),
        amount=Decimal("129.90"),
    )


@pytest.fixture
def provider() -> RecordingProvider:
    return RecordingProvider()


@pytest.fixture
def notifier(provider, notification_log) -> EmailLifecycleNotifier:
    return EmailLifecycleNotifier(provider, notification_log, app_base_url="https://plans.example.com/")


def test_upcoming_due_email_is_rendered_and_sent_once(notifier, provider):
    assert notifier.notify_upcoming_due(_contract(), _installment(), idempotency_key="upcoming:c1:i1:3d") is True
    assert notifier.notify_upcoming_due(_contract(), _installment(), idempotency_key="upcoming:c1:i1:3d") is False

    assert len(provider.sent) == 1
    message = provider.sent[0]
    assert message.recipient == "ana@example.com"
    assert message.notice_key == "upcoming:c1:i1:3d"
    assert message.contract_id == "c1"
    assert "13/03/2025" in message.subject
    assert "R$ 129.90" in message.text_body
    assert "CT-0001" in message.text_body
    assert "https://plans.example.com/customer/contracts/c1" in message.html_body


def test_contract_without_email_is_skipped(notifier, provider, notification_log):
    result = notifier.notify_overdue(
        _contract(client_email=None), _installment(), days_overdue=4, idempotency_key="overdue:c1:2025-03-10"
    )

    assert result is False
    assert provider.sent == []
    assert notification_log.keys == set()


def test_send_failure_releases_the_claim(notifier, provider, notification_log):
    provider.fail = True
    with pytest.raises(ConnectionRefusedError):
        notifier.notify_overdue(_contract(), _installment(), days_overdue=4, idempotency_key="overdue:c1:2025-03-10")

    assert notification_log.released == ["overdue:c1:2025-03-10"]

    provider.fail = False
    assert notifier.notify_overdue(
        _contract(), _installment(), days_overdue=4, idempotency_key="overdue:c1:2025-03-10"
    ) is True
    assert "4 day(s) overdue" in provider.sent[0].text_body


def test_renewal_outcome_emails_carry_reference_and_reason(notifier, provider):
    notifier.notify_renewal_success(_contract(), _installment(), reference="TID-99", idempotency_key="a")
    notifier.notify_renewal_failure(_contract(), _installment(), reason="Card expired", idempotency_key="b")

    assert "TID-99" in provider.sent[0].text_body
    assert "Card expired" in provider.sent[1].text_body


@pytest.mark.parametrize("kind", list(LifecycleEmail))
def test_every_template_renders_without_placeholders(kind):
    subject, text_body, html_body = render_lifecycle_email(kind, {"contract_number": "CT-1"})

    assert subject
    for rendered in (subject, text_body, html_body):
        assert "{{" not in rendered


def test_disabled_gateway_declines():
    result = DisabledPaymentGateway().attempt_charge(_contract(), _installment(), idempotency_key="k")

    assert result.success is False
    assert result.error_reason == CHARGING_DISABLED_REASON


def test_email_provider_selection():
    smtp = create_email_provider(load_email_config({"EMAIL_PROVIDER": "smtp", "SMTP_HOST": "mail", "SMTP_PORT": "2525"}))
    assert isinstance(smtp, SMTPProvider)
    assert (smtp.host, smtp.port) == ("mail", 2525)

    assert isinstance(create_email_provider(load_email_config({})), DevPrintProvider)
    assert isinstance(create_email_provider(load_email_config({"EMAIL_PROVIDER": "carrier-pigeon"})), DevPrintProvider)


def test_smtp_provider_is_built_from_config():
    config = load_email_config(
        {
            "EMAIL_PROVIDER": "SMTP",
            "SMTP_TIMEOUT": "5",
            "SMTP_USE_TLS": "no",
            "BILLING_REPLY_TO": "financeiro@petplan.test",
        }
    )

    provider = create_email_provider(config)

    assert isinstance(provider, SMTPProvider)
    assert provider.timeout == 5.0
    assert provider.use_tls is False
    assert provider.reply_to == "financeiro@petplan.test"


def test_smtp_message_has_both_parts_and_notice_key():
    provider = SMTPProvider(
        from_email="billing@petplan.test",
        host="localhost",
        port=25,
        use_tls=False,
        reply_to="financeiro@petplan.test",
    )
    message = LifecycleMessage(
        recipient="ana@example.com",
        subject="Hello",
        text_body="Hi",
        html_body="<p>Hi</p>",
        notice_key="overdue:c1:2025-03-10",
    )

    email = provider.build_message(message)

    assert email["To"] == "ana@example.com"
    assert email["Reply-To"] == "financeiro@petplan.test"
    assert email[NOTICE_KEY_HEADER] == "overdue:c1:2025-03-10"
    assert email["Message-ID"].endswith("@petplan.test>")
    assert [part.get_content_type() for part in email.iter_parts()] == ["text/plain", "text/html"]
