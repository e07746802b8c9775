import logging
from typing import Optional, Protocol

from homebase.services.workflow_store import WorkflowStore, workflow_store

logger = logging.getLogger(__name__)


class InvoiceGenerator(Protocol):
    def generate(self, booking_id: str) -> str:
        ...


class LocalInvoiceGenerator:
    """Creates a draft invoice for a completed booking; repeated calls return the same invoice."""

    def __init__(self, store: Optional[WorkflowStore] = None) -> None:
        self.store = store or workflow_store

    def generate(self, booking_id: str) -> str:
        invoice, created = self.store.create_invoice_once(booking_id)
        if created:
            logger.info("Created invoice %s for booking %s", invoice.id, booking_id)
        else:
            logger.info("Invoice %s already exists for booking %s", invoice.id, booking_id)
        return invoice.id


invoice_generator = LocalInvoiceGenerator()
