"""Errors raised while driving the contract lifecycle."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from ...database import ConnectionAcquisitionError, DatabaseError, RetriesExhaustedError


@dataclass
class PerEntityProcessingError(Exception):
    """Business-logic failure for one contract during a batch pass.

    Always caught and logged where the batch iterates; never reaches the scheduler.
    """

    contract_id: str
    operation: str
    cause: BaseException

    def __post_init__(self) -> None:
        super().__init__(
            f"{self.operation} failed for contract {self.contract_id}: "
            f"{type(self.cause).__name__}: {self.cause}"
        )


class UnknownJobError(ValueError):
    """Raised when a manual trigger names a job that does not exist."""

    def __init__(self, job_name: str, known: Iterable[str]) -> None:
        self.job_name = job_name
        self.known = tuple(known)
        super().__init__(f"Unknown job {job_name!r}; expected one of: {', '.join(self.known)}")


__all__ = [
    "ConnectionAcquisitionError",
    "DatabaseError",
    "PerEntityProcessingError",
    "RetriesExhaustedError",
    "UnknownJobError",
]
