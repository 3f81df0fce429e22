# api/server.py
# ============================================================================
# HANDYLAND ORDER & PAYMENT PIPELINE — FASTAPI SERVER
# ============================================================================
# Orders, checkout, payment confirmation, webhooks, refunds, real-time
# order updates and health probes.
# ============================================================================

import time
from contextlib import asynccontextmanager
from typing import Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from api.auth import Principal, decode_token, optional_user, require_admin, require_user
from api.container import ServerConfig, ServiceContainer
from pipeline.checkout import CheckoutRequest
from pipeline.errors import CommerceError
from pipeline.order_state import StatusUpdate
from pipeline.orders import CouponQuoteRequest, DirectOrderRequest
from pipeline.refunds import DirectReversalBody, RefundDecisionBody, RefundRequestBody
from schemas.commerce import OrderStatus, utcnow
from services.realtime import ADMIN_ROOM, user_room

logger = structlog.get_logger().bind(component="server")

VERSION = "1.0.0"


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class CancelRequest(BaseModel):
    note: Optional[str] = None


class PaymentSuccessRequest(BaseModel):
    session_id: str = Field(..., min_length=1)


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    uptime_seconds: float
    gateway: str
    database: bool
    event_bus_connected: bool
    websocket_admins: int


def ok(status_code: int = 200, **body) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=jsonable_encoder({"success": True, **body}))


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


# =============================================================================
# ORDER ENDPOINTS
# =============================================================================

orders_router = APIRouter(prefix="/orders", tags=["orders"])


@orders_router.post("/apply-coupon")
async def apply_coupon(
    body: CouponQuoteRequest,
    user: Principal = Depends(require_user),
    container: ServiceContainer = Depends(get_container),
):
    quote = await container.orders.quote_coupon(body)
    return ok(data=quote)


@orders_router.post("")
async def create_order(
    body: DirectOrderRequest,
    user: Principal = Depends(require_user),
    container: ServiceContainer = Depends(get_container),
):
    order = await container.orders.create_direct(body, user.user_id)
    return ok(status_code=201, order=order)


@orders_router.get("")
async def my_orders(
    user: Principal = Depends(require_user),
    container: ServiceContainer = Depends(get_container),
):
    orders = await container.orders.list_for_user(user.user_id)
    return ok(count=len(orders), orders=orders)


@orders_router.get("/admin/all")
async def all_orders(
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: Principal = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
):
    result = await container.orders.list_all(status=status, page=page, limit=limit)
    return ok(**result.model_dump(mode="json"))


@orders_router.get("/admin/stats")
async def order_stats(
    admin: Principal = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
):
    return ok(stats=await container.orders.stats())


@orders_router.put("/admin/{order_id}/status")
async def update_order_status(
    order_id: str,
    body: StatusUpdate,
    admin: Principal = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
):
    order = await container.orders.admin_update(order_id, body)
    return ok(order=order)


@orders_router.put("/refund/{refund_id}")
async def process_refund(
    refund_id: str,
    body: RefundDecisionBody,
    admin: Principal = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
):
    refund = await container.refunds.process(refund_id, body)
    return ok(refund=refund)


@orders_router.get("/{order_id}")
async def get_order(
    order_id: str,
    user: Principal = Depends(require_user),
    container: ServiceContainer = Depends(get_container),
):
    order = await container.orders.get(order_id, user.user_id, is_admin=user.is_admin)
    return ok(order=order)


@orders_router.put("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    body: Optional[CancelRequest] = None,
    user: Principal = Depends(require_user),
    container: ServiceContainer = Depends(get_container),
):
    order = await container.orders.cancel(order_id, user.user_id, body.note if body else None)
    return ok(order=order)


@orders_router.post("/{order_id}/refund")
async def request_refund(
    order_id: str,
    body: RefundRequestBody,
    user: Principal = Depends(require_user),
    container: ServiceContainer = Depends(get_container),
):
    refund = await container.refunds.request(order_id, user.user_id, body)
    return ok(status_code=201, refund=refund)


@orders_router.get("/{order_id}/refunds")
async def order_refunds(
    order_id: str,
    user: Principal = Depends(require_user),
    container: ServiceContainer = Depends(get_container),
):
    await container.orders.get(order_id, user.user_id, is_admin=user.is_admin)
    return ok(refunds=await container.refunds.list_for_order(order_id))


# =============================================================================
# PAYMENT ENDPOINTS
# =============================================================================

payment_router = APIRouter(prefix="/payment", tags=["payment"])


@payment_router.post("/create-checkout-session")
async def create_checkout_session(
    body: CheckoutRequest,
    user: Optional[Principal] = Depends(optional_user),
    container: ServiceContainer = Depends(get_container),
):
    result = await container.checkout.create_session(
        body,
        user_id=user.user_id if user else None,
        user_email=user.email if user else None,
    )
    return ok(id=result.session_id, url=result.url, expires_at=result.expires_at,
              totals=result.totals, coupon_code=result.coupon_code)


@payment_router.post("/success")
async def payment_success(body: PaymentSuccessRequest, container: ServiceContainer = Depends(get_container)):
    """Client returned from the hosted page; converges with the webhook"""
    result = await container.confirmation.confirm_from_client(body.session_id)
    if result.order is None:
        return JSONResponse(status_code=200, content={
            "success": False,
            "status": result.outcome.value,
            "message": "Payment not completed",
        })
    return ok(status=result.outcome.value, order=result.order)


@payment_router.post("/webhook")
async def payment_webhook(request: Request, container: ServiceContainer = Depends(get_container)):
    """
    Signed gateway events. The raw body is verified before parsing. Any
    failure after verification answers 500 so the gateway redelivers.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    try:
        result = await container.webhooks.process(payload, signature)
    except CommerceError:
        raise
    except Exception as e:
        logger.error("webhook_processing_failed", error=str(e), error_type=type(e).__name__)
        return JSONResponse(status_code=500, content={
            "success": False,
            "error": {"code": "webhook_processing_failed", "message": "Webhook processing failed"},
        })
    return result


@payment_router.post("/refund")
async def direct_refund(
    body: DirectReversalBody,
    admin: Principal = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
):
    refund = await container.refunds.direct_reversal(body)
    return ok(refund=refund)


@payment_router.get("/{session_id}")
async def payment_details(session_id: str, container: ServiceContainer = Depends(get_container)):
    session = await container.gateway.retrieve_session(session_id)
    return ok(
        id=session.id,
        status=session.status,
        payment_status=session.payment_status,
        amount_total=session.amount_total / 100,
        currency=session.currency,
        customer_email=session.customer_email,
    )


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    container = container or ServiceContainer()
    start_time = utcnow()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic"""
        logger.info("server_starting", version=VERSION, env=container.config.ENV)
        await container.start()
        yield
        logger.info("server_shutting_down")
        await container.stop()

    app = FastAPI(
        title="HandyLand Order & Payment Pipeline",
        description="Checkout, payment confirmation, order lifecycle and refunds",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.container = container

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=container.config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        start = time.perf_counter()

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(CommerceError)
    async def commerce_error_handler(request: Request, exc: CommerceError):
        log = logger.bind(path=request.url.path, code=exc.code, status=exc.status_code)
        if exc.status_code >= 500:
            log.error("request_failed", error=exc.message)
        else:
            log.info("request_rejected", error=exc.message)
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={
            "success": False,
            "error": {
                "code": "validation_error",
                "message": "Invalid request",
                "details": {"errors": jsonable_encoder(exc.errors())},
            },
        })

    # =========================================================================
    # HEALTH ENDPOINTS
    # =========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint"""
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=(utcnow() - start_time).total_seconds(),
            gateway=container.gateway.name,
            database=container.uses_database,
            event_bus_connected=await container.event_bus.health_check(),
            websocket_admins=container.ws_manager.connection_count(ADMIN_ROOM),
        )

    @app.get("/ready")
    async def readiness_check():
        """Kubernetes readiness probe"""
        ready = await container.event_bus.health_check()
        return JSONResponse(status_code=200 if ready else 503, content={"ready": ready})

    @app.get("/live")
    async def liveness_check():
        """Kubernetes liveness probe"""
        return {"live": True}

    # =========================================================================
    # WEBSOCKET ENDPOINTS
    # =========================================================================

    @app.websocket("/ws/orders")
    async def orders_websocket(websocket: WebSocket, token: str = ""):
        """Real-time order updates for the token's user (and the admin room)"""
        try:
            principal = decode_token(token, container.config.JWT_SECRET, container.config.JWT_ALGORITHM)
        except CommerceError:
            await websocket.close(code=1008)
            return

        rooms = [user_room(principal.user_id)]
        if principal.is_admin:
            rooms.append(ADMIN_ROOM)
        await container.ws_manager.connect(websocket, rooms)
        try:
            await websocket.send_json({"event": "connected", "data": {"rooms": rooms}})
            while True:
                data = await websocket.receive_text()
                if data == "ping":
                    await websocket.send_text("pong")
        except WebSocketDisconnect:
            container.ws_manager.disconnect(websocket)

    app.include_router(orders_router)
    app.include_router(payment_router)
    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=ServerConfig.HOST,
        port=ServerConfig.PORT,
        reload=ServerConfig.DEBUG,
    )
