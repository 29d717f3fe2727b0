"""HTTP surface for both payment gateways.

`create_app` wires every collaborator (database sessions, signature
engines, card processor client, email sender) once and hands them to the
route handlers; nothing is looked up from module globals at request time.
"""

import asyncio
import contextlib
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

import stripe
from fastapi import FastAPI, Form, Header, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool

from bikepay.common.config import Settings
from bikepay.common.db import Base, make_engine, make_session_factory
from bikepay.common.errors import PaymentError, error_body
from bikepay.common.logging import logger, trace_id_ctx
from bikepay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from bikepay.services.notification.service import EmailDispatcher, ResendSender
from bikepay.services.payments.card import CardGateway, CardPaymentService, CardWebhookService
from bikepay.services.payments.redsys_params import PayloadEncoding
from bikepay.services.payments.redsys_signing import KeyDerivationMode, SignatureEngine
from bikepay.services.payments.schemas import (
    PaymentIntentRequest,
    PaymentIntentResponse,
    RedsysPaymentForm,
    RedsysPaymentRequest,
    ReturnPageResult,
)
from bikepay.services.payments.service import RedsysPaymentService


def build_redsys_service(settings: Settings, session_factory) -> RedsysPaymentService:
    def engine(encoding: str) -> SignatureEngine:
        return SignatureEngine(
            settings.redsys_secret_key,
            encoding=PayloadEncoding(encoding),
            derivation_mode=KeyDerivationMode(settings.redsys_key_derivation),
            merchant_code=settings.redsys_merchant_code,
            terminal=settings.redsys_terminal,
        )

    return RedsysPaymentService(
        session_factory,
        outbound_engine=engine(settings.redsys_outbound_signature_encoding),
        inbound_engine=engine(settings.redsys_inbound_signature_encoding),
        merchant_code=settings.redsys_merchant_code,
        terminal=settings.redsys_terminal,
        site_base_url=settings.site_base_url,
        gateway_url=settings.redsys_endpoint,
        environment=settings.app_env,
        description=settings.redsys_product_description,
        notification_path=settings.redsys_notification_path,
        success_path=settings.redsys_success_path,
        failure_path=settings.redsys_failure_path,
    )


def create_app(
    settings: Settings,
    session_factory=None,
    card_gateway: CardGateway | None = None,
    email_sender=None,
    run_dispatcher: bool = True,
) -> FastAPI:
    """Build the payment API; raises `ConfigurationError` before serving anything."""

    settings.validate_for_startup()

    if session_factory is None:
        engine = make_engine(settings.postgres_dsn)
        if settings.postgres_dsn.startswith("sqlite"):
            Base.metadata.create_all(engine)
        session_factory = make_session_factory(engine)
    if card_gateway is None and settings.stripe_secret_key:
        card_gateway = CardGateway(stripe.StripeClient(settings.stripe_secret_key), settings.stripe_webhook_secret)
    if email_sender is None and settings.resend_api_key:
        email_sender = ResendSender(settings.resend_api_key, settings.email_from)

    redsys = build_redsys_service(settings, session_factory)
    dispatcher = None
    if email_sender is not None:
        dispatcher = EmailDispatcher(
            session_factory,
            email_sender,
            max_attempts=settings.email_max_attempts,
            interval_seconds=settings.email_dispatch_interval_seconds,
        )
    else:
        logger.warning("no email sender configured; confirmation emails stay queued")

    @asynccontextmanager
    async def lifespan(api: FastAPI):
        """Run the email outbox dispatcher with the app lifecycle."""

        dispatcher_task = None
        if dispatcher is not None and run_dispatcher:
            dispatcher_task = asyncio.create_task(dispatcher.run_forever())
        api.state.dispatcher_task = dispatcher_task
        yield
        if dispatcher_task is not None:
            dispatcher_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await dispatcher_task

    app = FastAPI(title="Bikepay Payments", lifespan=lifespan)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.redsys = redsys
    app.state.dispatcher = dispatcher

    @app.exception_handler(PaymentError)
    async def payment_error_handler(_: Request, exc: PaymentError):
        return JSONResponse(status_code=exc.http_status, content=error_body(exc))

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency, and bind a trace id, for every call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        trace_token = trace_id_ctx.set(request.headers.get("x-correlation-id") or str(uuid4()))
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            trace_id_ctx.reset(trace_token)
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(route=route, method=method).observe(elapsed)
            http_requests_total.labels(route=route, method=method, status_code=str(status_code)).inc()

    @app.post("/api/redsys", response_model=RedsysPaymentForm)
    def create_redsys_payment(req: RedsysPaymentRequest):
        """Return the signed form fields for the browser redirect to the bank gateway."""

        return redsys.compose_payment_request(
            req.amount,
            order_id=req.order_id,
            locale=req.locale,
            reservation_id=req.reservation_id,
            description=req.description,
        )

    @app.post("/api/redsys/preview")
    def preview_redsys_payment(req: RedsysPaymentRequest):
        """Sign without recording anything. Disabled in live deployments."""

        if settings.is_live:
            raise HTTPException(status_code=404, detail="Not Found")
        return redsys.preview(req.amount, order_id=req.order_id, locale=req.locale, description=req.description)

    @app.post(settings.redsys_notification_path)
    def redsys_notification(
        Ds_MerchantParameters: str | None = Form(default=None),
        Ds_Signature: str | None = Form(default=None),
        Ds_SignatureVersion: str | None = Form(default=None),
    ):
        """Server-to-server result notification from the bank gateway."""

        redsys.handle_notification(Ds_MerchantParameters, Ds_Signature, Ds_SignatureVersion)
        return PlainTextResponse("OK", status_code=200)

    @app.get("/api/redsys/return", response_model=ReturnPageResult)
    def redsys_return(
        Ds_MerchantParameters: str | None = None,
        Ds_Signature: str | None = None,
        Ds_SignatureVersion: str | None = None,
    ):
        """Verified view of the parameters appended to the success/failure page URL."""

        return redsys.verify_return(Ds_MerchantParameters, Ds_Signature, Ds_SignatureVersion)

    if card_gateway is not None:
        card_payments = CardPaymentService(session_factory, card_gateway)
        card_webhooks = CardWebhookService(
            session_factory,
            card_gateway,
            live=settings.is_live,
            test_card_fingerprints=settings.test_card_fingerprints,
        )
        app.state.card_webhooks = card_webhooks

        @app.post("/api/stripe/create-payment-intent", response_model=PaymentIntentResponse)
        def create_payment_intent(req: PaymentIntentRequest):
            """Create a card payment intent for the hosted card form."""

            return card_payments.create_payment_intent(req.amount, req.currency, req.metadata)

        @app.post("/api/webhooks/stripe")
        async def stripe_webhook(request: Request, stripe_signature: str | None = Header(default=None)):
            """Card processor event delivery."""

            body = await request.body()
            await run_in_threadpool(card_webhooks.handle_event, body, stripe_signature)
            return {"received": True}
    else:
        logger.warning("card processor not configured; card payment routes disabled")

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health check endpoint."""

        return {"ok": True}

    return app
