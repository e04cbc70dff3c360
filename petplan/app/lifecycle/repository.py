"""Persistence layer for lifecycle reads and status writes."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

import psycopg2.extras
from psycopg2.extensions import connection as PgConnection

from ...database import Database
from .models import BillingPeriod, Contract, ContractStatus, Installment, InstallmentStatus

logger = logging.getLogger(__name__)


_CONTRACT_COLUMNS = """
    SELECT
        c.id,
        c.contract_number,
        c.status,
        c.billing_period,
        c.monthly_amount,
        c.annual_amount,
        c.payment_method,
        c.cielo_card_token AS card_token,
        c.card_brand,
        c.start_date,
        c.created_at,
        c.updated_at,
        cl.full_name AS client_name,
        cl.email AS client_email,
        p.name AS pet_name,
        pl.name AS plan_name
    FROM contracts c
    LEFT JOIN clients cl ON cl.id = c.client_id
    LEFT JOIN pets p ON p.id = c.pet_id
    LEFT JOIN plans pl ON pl.id = c.plan_id
"""

NOTIFICATION_LOG_DDL = """
    CREATE TABLE IF NOT EXISTS lifecycle_notification_log (
        idempotency_key TEXT PRIMARY KEY,
        contract_id VARCHAR NOT NULL,
        kind TEXT NOT NULL,
        sent_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
"""


def _row_to_contract(row: Mapping[str, Any]) -> Contract:
    return Contract(
        id=str(row["id"]),
        contract_number=str(row["contract_number"]),
        status=ContractStatus(row["status"]),
        billing_period=BillingPeriod(row.get("billing_period") or BillingPeriod.MONTHLY.value),
        monthly_amount=row.get("monthly_amount") or 0,
        annual_amount=row.get("annual_amount"),
        payment_method=row.get("payment_method"),
        card_token=row.get("card_token"),
        card_brand=row.get("card_brand"),
        client_name=row.get("client_name"),
        client_email=row.get("client_email"),
        pet_name=row.get("pet_name"),
        plan_name=row.get("plan_name"),
        start_date=row.get("start_date"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_installment(row: Mapping[str, Any]) -> Installment:
    return Installment(
        id=str(row["id"]),
        contract_id=str(row["contract_id"]),
        installment_number=int(row.get("installment_number") or 0),
        due_date=row["due_date"],
        amount=row.get("amount") or 0,
        status=InstallmentStatus(row["status"]),
        paid_at=row.get("paid_at"),
    )


class PostgresLifecycleRepository:
    """Storage interface used by the reconciler and the renewal service."""

    def __init__(self, database: Database) -> None:
        self._database = database

    def _fetch_all(self, sql: str, params: Sequence[Any], *, operation: str) -> List[Dict[str, Any]]:
        def _op(conn: PgConnection) -> List[Dict[str, Any]]:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                cursor.execute(sql, params)
                return [dict(row) for row in cursor.fetchall()]

        return self._database.run_query_with_retry(_op, operation=operation)

    def list_all_contracts(self) -> List[Contract]:
        rows = self._fetch_all(
            _CONTRACT_COLUMNS + " ORDER BY c.created_at ASC, c.id ASC",
            (),
            operation="list_all_contracts",
        )
        contracts: List[Contract] = []
        for row in rows:
            try:
                contracts.append(_row_to_contract(row))
            except ValueError:
                logger.warning("Skipping malformed contract row %s", row.get("id"), exc_info=True)
        return contracts

    def get_contract(self, contract_id: str) -> Optional[Contract]:
        rows = self._fetch_all(
            _CONTRACT_COLUMNS + " WHERE c.id = %s LIMIT 1",
            (contract_id,),
            operation="get_contract",
        )
        return _row_to_contract(rows[0]) if rows else None

    def list_installments_by_contract(self, contract_id: str) -> List[Installment]:
        rows = self._fetch_all(
            """
            SELECT id, contract_id, installment_number, due_date, amount, status, paid_at
            FROM contract_installments
            WHERE contract_id = %s
            ORDER BY due_date ASC, installment_number ASC
            """,
            (contract_id,),
            operation="list_installments_by_contract",
        )
        return [_row_to_installment(row) for row in rows]

    def update_contract_status(self, contract_id: str, status: ContractStatus) -> bool:
        def _op(conn: PgConnection) -> bool:
            with conn.cursor() as cursor:
                cursor.execute(
                    "UPDATE contracts SET status = %s, updated_at = NOW() WHERE id = %s",
                    (status.value, contract_id),
                )
                return cursor.rowcount > 0

        return self._database.run_query_with_retry(_op, operation="update_contract_status")


class PostgresNotificationLog:
    """Idempotency ledger for lifecycle notifications."""

    def __init__(self, database: Database) -> None:
        self._database = database

    def ensure_table(self) -> None:
        def _op(conn: PgConnection) -> None:
            with conn.cursor() as cursor:
                cursor.execute(NOTIFICATION_LOG_DDL)

        self._database.run_transaction_with_retry(_op, operation="ensure_notification_log")

    def claim(self, idempotency_key: str, *, contract_id: str, kind: str) -> bool:
        """Record ``idempotency_key``; ``False`` when it was already recorded."""

        def _op(conn: PgConnection) -> bool:
            with conn.cursor() as cursor:
                cursor.execute(
                    """
                    INSERT INTO lifecycle_notification_log (idempotency_key, contract_id, kind)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (idempotency_key) DO NOTHING
                    RETURNING idempotency_key
                    """,
                    (idempotency_key, contract_id, kind),
                )
                return cursor.fetchone() is not None

        return self._database.run_query_with_retry(_op, operation="claim_notification")

    def release(self, idempotency_key: str) -> None:
        def _op(conn: PgConnection) -> None:
            with conn.cursor() as cursor:
                cursor.execute(
                    "DELETE FROM lifecycle_notification_log WHERE idempotency_key = %s",
                    (idempotency_key,),
                )

        self._database.run_query_with_retry(_op, operation="release_notification")


__all__ = ["NOTIFICATION_LOG_DDL", "PostgresLifecycleRepository", "PostgresNotificationLog"]
