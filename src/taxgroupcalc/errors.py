# errors.py
"""
Typed errors raised by the domain, the resolver and the query layer.

Each error carries the HTTP status it maps to; `responses.py` turns them
into failure envelopes.
"""

from __future__ import annotations

from typing import Any


class TaxCalcError(Exception):
    status_code: int = 500

    def __init__(self, message: str, errors: list[Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.errors = errors


class ValidationError(TaxCalcError):
    """Malformed tax or tax group input; the caller can fix it."""

    status_code = 400


class InvalidAmountError(TaxCalcError):
    """Negative or non-finite monetary amount."""

    status_code = 400


class NotFoundError(TaxCalcError):
    status_code = 404
