"""Checkout service API built with FastAPI.

Views are kept small: they validate the request with Pydantic, map it to a
domain command, delegate to an orchestrator and render the result. Every
error leaves the service as the ``{code, message, requestId, details?}``
envelope.

``create_app`` wires the settings, the session factory and the payment and
notification ports so tests can swap each of them; ``app`` is the instance
served by uvicorn.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from .checkout import CheckoutOrchestrator
from .db import build_engine, build_session_factory, init_db
from .domain import CurrentUser, Notifier, PaymentGateway, utcnow
from .errors import CheckoutError, ForbiddenError, InvariantViolation
from .gateway.logging_filters import configure_logging
from .gateway.middleware import REQUEST_ID_CTX, RequestIdMiddleware
from .monitoring import router as monitoring_router
from .providers import build_payment_gateway, get_notifier
from .refunds import RefundOrchestrator
from .schemas import CancelRequest, CheckoutRequest, RefundRequest, ReturnRefundRequest, serialize_order
from .settings import Settings, get_settings
from .webhooks import SIGNATURE_HEADER, PaymentWebhookProcessor, parse_event, verify_signature

logger = logging.getLogger("checkout.api")


# ---------------- Dependencies ---------------- #

def get_db(request: Request):
    session = request.app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


def get_app_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_clock(request: Request) -> Callable[[], datetime]:
    return request.app.state.clock


def optional_user(x_user_id: Optional[str] = Header(default=None),
                  x_user_role: Optional[str] = Header(default=None)) -> Optional[CurrentUser]:
    if not x_user_id or not x_user_id.strip():
        return None
    return CurrentUser(id=x_user_id.strip(), role=(x_user_role or "user").strip().lower())


def current_user(user: Optional[CurrentUser] = Depends(optional_user)) -> CurrentUser:
    if user is None:
        raise CheckoutError("UNAUTHENTICATED", "Authentication required", status_code=401)
    return user


def require_admin(user: CurrentUser = Depends(current_user)) -> CurrentUser:
    if not user.is_admin:
        raise ForbiddenError("FORBIDDEN", "Admin role required")
    return user


def checkout_orchestrator(db: Session = Depends(get_db), settings: Settings = Depends(get_settings),
                          gateway: PaymentGateway = Depends(get_gateway),
                          notifier: Notifier = Depends(get_app_notifier),
                          clock=Depends(get_clock)) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(db, settings, gateway, notifier, clock)


def refund_orchestrator(db: Session = Depends(get_db), settings: Settings = Depends(get_settings),
                        gateway: PaymentGateway = Depends(get_gateway),
                        notifier: Notifier = Depends(get_app_notifier),
                        clock=Depends(get_clock)) -> RefundOrchestrator:
    return RefundOrchestrator(db, settings, gateway, notifier, clock)


# ---------------- Error envelope ---------------- #

def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or REQUEST_ID_CTX.get()


def _envelope(request: Request, status_code: int, body: dict) -> JSONResponse:
    rid = _request_id(request)
    return JSONResponse({**body, "requestId": rid}, status_code=status_code, headers={"X-Request-ID": rid})


async def checkout_error_handler(request: Request, exc: CheckoutError):
    if isinstance(exc, InvariantViolation):
        logger.error("invariant violated", extra={"code": exc.code, "path": request.url.path})
    return _envelope(request, exc.status_code, exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError):
    return _envelope(request, 422, {"code": "VALIDATION_ERROR", "message": "Invalid request body",
                                    "details": jsonable_encoder(exc.errors(), custom_encoder={
                                        Exception: str})})


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = "NOT_FOUND" if exc.status_code == 404 else f"HTTP_{exc.status_code}"
    return _envelope(request, exc.status_code, {"code": code, "message": str(exc.detail)})


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled error", extra={"path": request.url.path})
    return _envelope(request, 500, {"code": "INTERNAL_ERROR", "message": "Internal server error"})


# ---------------- App ---------------- #

def create_app(settings: Optional[Settings] = None, gateway: Optional[PaymentGateway] = None,
               notifier: Optional[Notifier] = None, session_factory: Optional[sessionmaker] = None,
               clock: Callable[[], datetime] = utcnow) -> FastAPI:
    """Build the API.

    Args:
        settings: Settings to serve with; ``get_settings()`` otherwise.
        gateway: Payment provider port; picked from settings otherwise.
        notifier: Notification port; the logging notifier otherwise.
        session_factory: Session factory; built from ``database_url``
            otherwise.
        clock: Current-time source shared by the orchestrators.

    Returns:
        FastAPI: The configured application.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="Checkout Service")
    if session_factory is None:
        engine = build_engine(settings.database_url)
        session_factory = build_session_factory(engine)
    app.state.engine = session_factory.kw["bind"]
    app.state.session_factory = session_factory
    app.state.gateway = gateway or build_payment_gateway(settings)
    app.state.notifier = notifier or get_notifier()
    app.state.clock = clock
    app.dependency_overrides[get_settings] = lambda: settings

    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(CheckoutError, checkout_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.on_event("startup")
    def _startup_db():
        init_db(app.state.engine)

    app.include_router(monitoring_router)

    @app.post("/checkout/quote")
    def quote(body: CheckoutRequest, user: Optional[CurrentUser] = Depends(optional_user),
              orchestrator: CheckoutOrchestrator = Depends(checkout_orchestrator)):
        """Price a cart without side effects."""
        return orchestrator.quote(user, body.to_domain()).to_dict()

    @app.post("/checkout/cod")
    def checkout_cod(body: CheckoutRequest, user: CurrentUser = Depends(current_user),
                     idempotency_key: Optional[str] = Header(default=None),
                     orchestrator: CheckoutOrchestrator = Depends(checkout_orchestrator)):
        """Place a pay-on-delivery order.

        Returns:
            JSONResponse: 201 with the order, or 200 with
            ``Idempotent-Replay: true`` when the key was already used with
            the same payload.
        """
        outcome = orchestrator.checkout_pay_on_delivery(user, body.to_domain(), idempotency_key)
        return _checkout_response({"order": serialize_order(outcome.order), "warnings": outcome.warnings},
                                  outcome.created)

    @app.post("/checkout/card")
    def checkout_card(body: CheckoutRequest, user: CurrentUser = Depends(current_user),
                      idempotency_key: Optional[str] = Header(default=None),
                      orchestrator: CheckoutOrchestrator = Depends(checkout_orchestrator)):
        """Place a card order and return the hosted payment URL."""
        outcome = orchestrator.checkout_card_payment(user, body.to_domain(), idempotency_key)
        return _checkout_response({"order": serialize_order(outcome.order),
                                   "checkout_url": outcome.checkout_url,
                                   "warnings": outcome.warnings}, outcome.created)

    @app.post("/orders/{order_id}/cancel")
    def cancel_order(order_id: str, body: Optional[CancelRequest] = None,
                     user: CurrentUser = Depends(current_user),
                     idempotency_key: Optional[str] = Header(default=None),
                     orchestrator: CheckoutOrchestrator = Depends(checkout_orchestrator)):
        """Cancel an order that has not been paid for yet."""
        order = orchestrator.cancel(user, order_id, idempotency_key, body.reason if body else None)
        return {"order": serialize_order(order)}

    @app.post("/webhooks/payment")
    async def payment_webhook(request: Request, db: Session = Depends(get_db),
                              settings: Settings = Depends(get_settings)):
        """Receive a signed provider event.

        Only signature and payload problems are answered with 400; every
        other outcome is acknowledged so the provider stops redelivering.
        """
        raw = await request.body()
        verify_signature(raw, request.headers.get(SIGNATURE_HEADER), settings.payment_webhook_secret,
                         settings.webhook_tolerance_seconds)
        event = parse_event(raw)
        processor = PaymentWebhookProcessor(db, settings, request.app.state.gateway,
                                            request.app.state.notifier, request.app.state.clock)
        await run_in_threadpool(processor.process, event)
        return {"received": True}

    @app.post("/admin/orders/{order_id}/refund")
    def refund_order(order_id: str, body: RefundRequest, _admin: CurrentUser = Depends(require_admin),
                     idempotency_key: Optional[str] = Header(default=None),
                     refunds: RefundOrchestrator = Depends(refund_orchestrator)):
        order = refunds.refund(order_id, body.amount_minor, body.reason, idempotency_key, restock=body.restock)
        return {"order": serialize_order(order)}

    @app.post("/admin/orders/{order_id}/return-refund")
    def refund_return(order_id: str, body: ReturnRefundRequest, _admin: CurrentUser = Depends(require_admin),
                      idempotency_key: Optional[str] = Header(default=None),
                      refunds: RefundOrchestrator = Depends(refund_orchestrator)):
        """Refund returned items; each return request carries its own ``Idempotency-Key``."""
        order = refunds.refund_return(order_id, body.to_domain(), idempotency_key, body.reason,
                                      body.include_shipping, restock=body.restock)
        return {"order": serialize_order(order)}

    @app.post("/admin/reservations/expire")
    def expire_reservations(_admin: CurrentUser = Depends(require_admin),
                            orchestrator: CheckoutOrchestrator = Depends(checkout_orchestrator)):
        return {"expired": orchestrator.sweep_expired()}

    return app


def _checkout_response(body: dict, created: bool) -> JSONResponse:
    if created:
        return JSONResponse(body, status_code=201)
    return JSONResponse(body, status_code=200, headers={"Idempotent-Replay": "true"})


app = create_app()
