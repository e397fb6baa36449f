"""Domain errors with stable reason codes."""

from __future__ import annotations


class DeliveryError(Exception):
    """Base error carrying a machine code and the HTTP status it maps to."""

    status_code: int = 400

    def __init__(self, code: str, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationFailed(DeliveryError):
    status_code = 400


class NotFound(DeliveryError):
    status_code = 404


class StateConflict(DeliveryError):
    """Rejected because of the current order/stage state; always logged."""

    status_code = 409


class LedgerContention(DeliveryError):
    status_code = 503

    def __init__(self, order_id: str, attempts: int) -> None:
        super().__init__(
            "LEDGER_CONTENTION",
            f"Could not append to ledger of order {order_id} after {attempts} attempts",
        )
