"""Billing number allocation."""

from datetime import date

import structlog

from billing_engine.persistence.base import BillingRepository

logger = structlog.get_logger(__name__)


def format_billing_no(prefix: str, year: int, sequence: int) -> str:
    """Format ``{prefix}-{year}-{sequence:05d}``, e.g. ``INV-2026-00042``."""
    return f"{prefix}-{year:04d}-{sequence:05d}"


class BillingNumberAllocator:
    """Allocates unique billing numbers per billing entity.

    The sequence is the entity's lifetime counter and is not reset yearly;
    only the year segment follows the issuance date. Call ``allocate``
    inside the same ``repository.atomic()`` block that inserts the invoice
    so a rolled-back insert does not consume a number.
    """

    def __init__(self, repository: BillingRepository):
        self._repository = repository
        self._logger = logger.bind(component="number_allocator")

    def allocate(self, entity_id: str, issued_on: date) -> str:
        """Allocate the next billing number for an entity.

        Raises:
            UnknownBillingEntityError: If the entity does not exist.
        """
        prefix, sequence = self._repository.increment_invoice_counter(entity_id)
        billing_no = format_billing_no(prefix, issued_on.year, sequence)
        self._logger.debug("billing_no_allocated", entity_id=entity_id, billing_no=billing_no)
        return billing_no
