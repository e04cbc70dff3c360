from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

import pytest

from petplan.app.lifecycle import Contract, ContractStatus, Installment, InstallmentStatus


class InMemoryContractStore:
    def __init__(self) -> None:
        self.contracts: Dict[str, Contract] = {}
        self.installments: Dict[str, List[Installment]] = {}
        self.updates: List[Tuple[str, ContractStatus]] = []
        self.failing: Dict[str, Exception] = {}
        self.list_error: Optional[Exception] = None

    def add_contract(
        self,
        contract_id: str,
        status: ContractStatus = ContractStatus.ACTIVE,
        **fields,
    ) -> Contract:
        fields.setdefault("payment_method", "credit_card")
        fields.setdefault("card_token", f"tok-{contract_id}")
        fields.setdefault("client_email", f"{contract_id}@example.com")
        contract = Contract(
            id=contract_id,
            contract_number=f"CT-{contract_id.upper()}",
            status=status,
            monthly_amount=Decimal("129.90"),
            **fields,
        )
        self.contracts[contract_id] = contract
        self.installments.setdefault(contract_id, [])
        return contract

    def add_installment(
        self,
        contract_id: str,
        *,
        due: datetime,
        paid: bool = False,
        status: Optional[InstallmentStatus] = None,
    ) -> Installment:
        existing = self.installments.setdefault(contract_id, [])
        installment = Installment(
            id=f"{contract_id}-i{len(existing) + 1}",
            contract_id=contract_id,
            installment_number=len(existing) + 1,
            due_date=due,
            amount=Decimal("129.90"),
            status=status or (InstallmentStatus.PAID if paid else InstallmentStatus.PENDING),
        )
        existing.append(installment)
        return installment

    def list_all_contracts(self) -> List[Contract]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.contracts.values())

    def list_installments_by_contract(self, contract_id: str) -> List[Installment]:
        if contract_id in self.failing:
            raise self.failing[contract_id]
        return list(self.installments.get(contract_id, []))

    def update_contract_status(self, contract_id: str, status: ContractStatus) -> bool:
        self.updates.append((contract_id, status))
        self.contracts[contract_id] = self.contracts[contract_id].model_copy(update={"status": status})
        return True


class InMemoryNotificationLog:
    def __init__(self) -> None:
        self.keys: Set[str] = set()
        self.released: List[str] = []

    def claim(self, idempotency_key: str, *, contract_id: str, kind: str) -> bool:
        if idempotency_key in self.keys:
            return False
        self.keys.add(idempotency_key)
        return True

    def release(self, idempotency_key: str) -> None:
        self.keys.discard(idempotency_key)
        self.released.append(idempotency_key)


@pytest.fixture
def store() -> InMemoryContractStore:
    return InMemoryContractStore()


@pytest.fixture
def notification_log() -> InMemoryNotificationLog:
    return InMemoryNotificationLog()
