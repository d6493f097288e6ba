"""Subscription provisioning saga and Stripe webhook reconciliation.

Creates a recurring subscription after a one-time payment authorization and
keeps local subscription records converged with Stripe's event stream.
"""

from billflow.billing.authorizer import PaymentAuthorizer
from billflow.billing.binder import PaymentMethodBinder
from billflow.billing.gateway import StripeGateway
from billflow.billing.plans import PlanCatalog
from billflow.billing.portal import create_portal_url
from billflow.billing.provisioner import SubscriptionProvisioner
from billflow.billing.reconciler import WebhookReconciler
from billflow.billing.store import SubscriptionStore

__all__ = [
    "PaymentAuthorizer",
    "PaymentMethodBinder",
    "PlanCatalog",
    "StripeGateway",
    "SubscriptionProvisioner",
    "SubscriptionStore",
    "WebhookReconciler",
    "create_portal_url",
]
