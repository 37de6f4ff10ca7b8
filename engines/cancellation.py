"""Cooperative cancellation for long running aggregation and reporting."""

from __future__ import annotations

import threading
from typing import Optional

from errors import OperationCancelled


class CancellationToken:
    """Flag shared between a caller and a computation that polls it.

    Computations call :meth:`raise_if_cancelled` between steps; the exception
    unwinds the computation so no partial result is ever returned.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self._reason or "cancelled")


def check(token: Optional[CancellationToken]) -> None:
    if token is not None:
        token.raise_if_cancelled()
