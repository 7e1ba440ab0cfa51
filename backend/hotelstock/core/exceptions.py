"""Domain errors raised by the reconciliation engine and the stock count store.

Every error derives from ``ValueError`` so callers that already treat
business-rule violations as ``ValueError`` keep working; each class carries
the HTTP status the API renders it with.
"""

from typing import Iterable, Optional


class ReconciliationError(ValueError):
    """Base class for fatal engine errors."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInterval(ReconciliationError):
    """Counts missing, misordered, unfinished or not belonging to the hotel."""

    status_code = 400


class IncompleteSubmission(ReconciliationError):
    """closeCycle invoked without a full, valid set of product counts."""

    status_code = 422

    def __init__(self, message: str, product_ids: Optional[Iterable[int]] = None):
        super().__init__(message)
        self.product_ids = sorted(product_ids or [])


class ConcurrentCloseConflict(ReconciliationError):
    """Another close-cycle committed first; retry with a fresh baseline."""

    status_code = 409

    def __init__(self, hotel_id: int, expected_version: int):
        super().__init__(
            f"Discount cycle for hotel {hotel_id} was closed concurrently "
            f"(baseline version {expected_version} is stale)"
        )
        self.hotel_id = hotel_id
        self.expected_version = expected_version


class CountNotFound(ReconciliationError):
    status_code = 404


class CountAlreadyFinished(ReconciliationError):
    """A finished stock count was about to be modified."""

    status_code = 409
