"""Stripe customer billing portal sessions."""

import logging

from billflow.billing.errors import ProcessorError
from billflow.billing.gateway import StripeGateway

logger = logging.getLogger(__name__)


async def create_portal_url(gateway: StripeGateway, customer_id: str, return_url: str) -> str:
    """Create a billing portal session where a customer manages their subscription.

    Args:
        gateway: Stripe gateway
        customer_id: Stripe customer id
        return_url: Where Stripe sends the customer afterwards

    Returns:
        Billing portal session URL

    Raises:
        ValidationError: If customer_id is empty
        ProcessorError: On Stripe API errors
    """
    session = await gateway.create_portal_session(customer_id, return_url)
    url = session.get("url")
    if not url:
        raise ProcessorError(f"Billing portal session for {customer_id} returned no URL")

    logger.info(f"Created billing portal session {session.get('id')} for {customer_id}")
    return url
