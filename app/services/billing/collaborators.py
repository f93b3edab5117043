"""Hooks into systems outside billing: customer notifications and suspension."""
import logging

from app.models.billing import Customer, Invoice

logger = logging.getLogger(__name__)


class BillingCollaborators:
    """Default collaborators only log. Replace with ``set_collaborators``."""

    def payment_failed(self, customer: Customer, invoice: Invoice | None) -> None:
        logger.warning(
            "Payment failed for customer %s",
            customer.id,
            extra={
                "customer_id": str(customer.id),
                "invoice_id": str(invoice.id) if invoice else None,
            },
        )

    def suspend_customer(self, customer: Customer, reason: str) -> None:
        logger.warning(
            "Suspension requested for customer %s: %s",
            customer.id,
            reason,
            extra={"customer_id": str(customer.id)},
        )


_collaborators = BillingCollaborators()


def get_collaborators() -> BillingCollaborators:
    return _collaborators


def set_collaborators(collaborators: BillingCollaborators | None) -> None:
    """Install collaborators; ``None`` restores the logging default."""
    global _collaborators
    _collaborators = BillingCollaborators() if collaborators is None else collaborators
