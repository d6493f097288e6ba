"""Error taxonomy for provisioning and reconciliation.

Every error carries a machine-readable ``kind`` and a human message so the
HTTP layer can answer with both without inspecting exception types.
"""


class BillingError(Exception):
    """Base class for all billing failures."""

    kind = "billing_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"error": self.kind, "message": self.message}


class ValidationError(BillingError):
    """Caller input is missing or malformed. Never retried automatically."""

    kind = "validation_error"


class NotFoundError(BillingError):
    """The processor does not know the referenced object."""

    kind = "not_found"


class NotReadyError(BillingError):
    """An external precondition is not met yet; the caller may re-drive later."""

    kind = "not_ready"


class UnknownPlanError(BillingError):
    """The plan/interval combination has no configured price."""

    kind = "unknown_plan"


class MissingPaymentMethodError(BillingError):
    """The authorization carries no payment method to bind."""

    kind = "missing_payment_method"


class AuthenticityError(BillingError):
    """Webhook signature did not verify; the processor must redeliver."""

    kind = "authenticity_error"


class MalformedPayloadError(BillingError):
    """A verified webhook body is not a usable event."""

    kind = "malformed_payload"


class ProcessorError(BillingError):
    """The payment processor failed or did not answer in time."""

    kind = "processor_error"


class StoreError(BillingError):
    """Base class for subscription store failures."""

    kind = "store_error"


class StoreReadError(StoreError):
    """Looking up a local subscription record failed."""

    kind = "store_read_error"


class StoreWriteError(StoreError):
    """Persisting a local subscription record failed.

    When raised after a processor-side mutation, the local record stays
    behind the processor until the next webhook delivery reconciles it.
    """

    kind = "store_write_error"
