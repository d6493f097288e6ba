"""aiohttp application exposing authorization, provisioning, portal and webhooks."""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from aiohttp import web

from billflow.billing.authorizer import PaymentAuthorizer, require_fields
from billflow.billing.errors import BillingError, ValidationError
from billflow.billing.gateway import StripeGateway
from billflow.billing.persistence import PostgresSubscriptionStore
from billflow.billing.plans import PlanCatalog
from billflow.billing.portal import create_portal_url
from billflow.billing.provisioner import SubscriptionProvisioner
from billflow.billing.reconciler import WebhookReconciler
from billflow.config.settings import AppConfig

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "validation_error": 400,
    "not_found": 404,
    "not_ready": 409,
    "unknown_plan": 422,
    "missing_payment_method": 422,
    "authenticity_error": 400,
    "malformed_payload": 400,
    "processor_error": 502,
    "store_read_error": 500,
    "store_write_error": 500,
}


@dataclass
class BillingServices:
    """Collaborators the HTTP handlers call into."""

    gateway: StripeGateway
    authorizer: PaymentAuthorizer
    provisioner: SubscriptionProvisioner
    reconciler: WebhookReconciler
    default_currency: str = "usd"
    portal_return_url: str = "http://localhost:5173/dashboard"

    @classmethod
    def from_config(cls, config: AppConfig) -> "BillingServices":
        gateway = StripeGateway.from_config(config)
        store = PostgresSubscriptionStore()
        authorizer = PaymentAuthorizer(gateway, product_name=config.product_name)
        return cls(
            gateway=gateway,
            authorizer=authorizer,
            provisioner=SubscriptionProvisioner(
                gateway,
                PlanCatalog.from_config(config),
                authorizer=authorizer,
                store=store,
                store_timeout=config.store_timeout_seconds,
            ),
            reconciler=WebhookReconciler.from_config(config, store, gateway),
            default_currency=config.default_currency,
            portal_return_url=config.portal_return_url,
        )


Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Translate billing errors into ``{"error": kind, "message": ...}`` responses."""
    try:
        return await handler(request)
    except BillingError as e:
        status = ERROR_STATUS.get(e.kind, 500)
        if status >= 500:
            logger.error(f"{request.method} {request.path} failed: {e.kind}: {e}")
        else:
            logger.warning(f"{request.method} {request.path} rejected: {e.kind}: {e}")
        return web.json_response(e.to_dict(), status=status)


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("Request body must be a JSON object") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _services(request: web.Request) -> BillingServices:
    return request.app["services"]


async def health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


async def create_payment_intent(request: web.Request) -> web.Response:
    """Handle POST /api/create-payment-intent."""
    services = _services(request)
    body = await _json_body(request)
    plan_id = body.get("planId")
    interval = body.get("interval")
    amount = body.get("amount")
    customer_email = body.get("customerEmail")
    require_fields(planId=plan_id, interval=interval, amount=amount, customerEmail=customer_email)

    handle = await services.authorizer.create_authorization(
        amount=amount,
        currency=body.get("currency") or services.default_currency,
        customer_email=customer_email,
        metadata={"plan_id": str(plan_id), "interval": str(interval)},
    )
    return web.json_response(
        {"clientSecret": handle.client_confirmation_secret, "paymentIntentId": handle.id}
    )


async def create_subscription(request: web.Request) -> web.Response:
    """Handle POST /api/create-subscription."""
    services = _services(request)
    body = await _json_body(request)
    result = await services.provisioner.provision(
        plan_id=body.get("planId"),
        interval=body.get("interval"),
        authorization_id=body.get("paymentIntentId"),
        customer_email=body.get("customerEmail"),
    )
    return web.json_response(result.to_dict())


async def create_portal_session(request: web.Request) -> web.Response:
    """Handle POST /api/create-portal-session."""
    services = _services(request)
    body = await _json_body(request)
    customer_id = body.get("customerId")
    require_fields(customerId=customer_id)

    url = await create_portal_url(services.gateway, customer_id, services.portal_return_url)
    return web.json_response({"url": url})


async def stripe_webhook(request: web.Request) -> web.Response:
    """Handle POST /api/webhooks/stripe.

    The body is read as raw bytes and handed over untouched; any parsing
    before verification would invalidate the signature.
    """
    sig_header = request.headers.get("Stripe-Signature")
    payload = await request.read()
    result = await _services(request).reconciler.reconcile(payload, sig_header)
    return web.json_response(result)


def create_app(services: BillingServices) -> web.Application:
    """Create the aiohttp application with all billing routes."""
    app = web.Application(middlewares=[error_middleware])
    app["services"] = services
    app.router.add_get("/health", health)
    app.router.add_post("/api/create-payment-intent", create_payment_intent)
    app.router.add_post("/api/create-subscription", create_subscription)
    app.router.add_post("/api/create-portal-session", create_portal_session)
    app.router.add_post("/api/webhooks/stripe", stripe_webhook)
    return app


async def run_server(
    app: web.Application,
    port: int,
    shutdown_event: Optional[asyncio.Event] = None,
) -> None:
    """Serve the application until the shutdown event is set."""
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    logger.info(f"Billing server listening on port {port}")

    try:
        if shutdown_event:
            await shutdown_event.wait()
        else:
            await asyncio.Event().wait()
    finally:
        logger.info("Shutting down billing server...")
        await runner.cleanup()
