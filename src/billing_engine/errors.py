"""Error kinds raised by the billing engine."""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from billing_engine.models import RunOutcome


class BillingError(Exception):
    """Base exception for billing engine errors."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidAmountError(BillingError):
    """A monetary amount is missing, not a number, or not positive."""

    pass


class InvalidRateError(BillingError):
    """A VAT or withholding rate is missing or outside ``[0, 1)``."""

    pass


class InvalidTransitionError(BillingError):
    """A lifecycle transition is not allowed from the current status."""

    def __init__(self, entity: str, current: str, action: str, details: Any = None):
        super().__init__(
            f"Cannot {action} {entity} in status {current}",
            details=details,
        )
        self.entity = entity
        self.current = current
        self.action = action


class ValidationError(BillingError):
    """Malformed schedule, request, or transition input."""

    pass


class NotFoundError(BillingError):
    """A referenced schedule, invoice or contract does not exist."""

    pass


class UnknownBillingEntityError(NotFoundError):
    """The billing entity used for numbering does not exist."""

    pass


class DuplicateRunError(BillingError):
    """The billing period for a schedule has already been claimed.

    Internal to the run executor; resolved into a SKIPPED run.
    """

    def __init__(
        self,
        schedule_id: str,
        period_key: str,
        existing_run_id: str | None = None,
        existing_outcome: "RunOutcome | None" = None,
    ):
        super().__init__(
            f"Schedule {schedule_id} already billed for period {period_key}",
            details={"existing_run_id": existing_run_id},
        )
        self.schedule_id = schedule_id
        self.period_key = period_key
        self.existing_run_id = existing_run_id
        self.existing_outcome = existing_outcome


class PersistenceError(BillingError):
    """The persistence collaborator failed or rejected a write."""

    pass


class DeliveryError(BillingError):
    """The e-mail or document collaborator failed."""

    pass
