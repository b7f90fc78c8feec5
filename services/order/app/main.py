"""
Order Service — FastAPI エントリーポイント

Command (POST / PUT) と Query (GET) のエンドポイントを分離する。

  - POST /orders                                      チェックアウト
  - PUT  /operators/me/orders/{uid}/status            オペレーターの状態更新
  - POST /orders/me/{uid}/request_cancellation        顧客のキャンセル依頼
  - GET  /orders/me/..., /operators/me/orders/...     読み取り
  - WS   /ws                                          リアルタイム通知
  - GET / POST /internal/reconciliation/...          突き合わせ（X-Internal-Token が必要）

認証は上流のゲートウェイで済んでおり、X-User-Uid / X-User-Role / X-User-Email
ヘッダーで利用者が渡される。
"""

import logging
import secrets
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass

import redis.asyncio as aioredis
import uvicorn
from fastapi import Depends, FastAPI, Header, Query, Request, Response, WebSocket, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, config, queries, reconciliation
from .checkout import CheckoutCoordinator
from .errors import OrderServiceError, PermissionDenied, Unauthenticated
from .gateway import SimulatedGateway, StripeGateway
from .geocoding import MapboxGeocoder, SimulatedGeocoder
from .notifications import CUSTOMER, OPERATOR, NotificationDispatcher, SendGridMailer, SkippingMailer
from .payments import PaymentOrchestrator
from .realtime import stream_user_events
from .schema import create_schema
from .schemas import CreateOrderRequest, CreateOrderResponse, StatusResponse, UpdateStatusRequest

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """リクエスト間で共有する依存関係（lifespan で組み立てる）"""
    session_factory: sessionmaker
    redis: aioredis.Redis
    payments: PaymentOrchestrator
    dispatcher: NotificationDispatcher
    checkout: CheckoutCoordinator


def build_services(session_factory: sessionmaker, redis: aioredis.Redis) -> Services:
    """キーが未設定の外部サービスはシミュレーション用クライアントに切り替える。"""
    timeout = config.HTTP_TIMEOUT_SECONDS
    if config.STRIPE_SECRET_KEY:
        gateway = StripeGateway(config.STRIPE_SECRET_KEY, config.STRIPE_API_URL, timeout)
    else:
        logger.warning("STRIPE_SECRET_KEY not set; using simulated payment gateway")
        gateway = SimulatedGateway()
    if config.MAPBOX_ACCESS_TOKEN:
        geocoder = MapboxGeocoder(config.MAPBOX_ACCESS_TOKEN, timeout=timeout)
    else:
        logger.warning("MAPBOX_ACCESS_TOKEN not set; using simulated geocoder")
        geocoder = SimulatedGeocoder()
    if config.SENDGRID_API_KEY and config.SENDER_EMAIL:
        mailer = SendGridMailer(config.SENDGRID_API_KEY, config.SENDER_EMAIL, timeout)
    else:
        mailer = SkippingMailer()

    payments = PaymentOrchestrator(gateway, config.CURRENCY)
    dispatcher = NotificationDispatcher(redis, mailer)
    return Services(
        session_factory=session_factory,
        redis=redis,
        payments=payments,
        dispatcher=dispatcher,
        checkout=CheckoutCoordinator(
            session_factory,
            payments,
            geocoder,
            dispatcher,
            config.TAX_RATE,
            default_preparation_minutes=config.DEFAULT_PREPARATION_MINUTES,
            delivery_buffer_minutes=config.DELIVERY_BUFFER_MINUTES,
        ),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    engine = create_async_engine(config.DATABASE_URL, echo=False)
    async with engine.begin() as conn:
        await create_schema(conn)
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)
    app.state.services = build_services(session_factory, redis_pool)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


@app.exception_handler(OrderServiceError)
async def handle_order_error(request: Request, exc: OrderServiceError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def handle_request_validation(request: Request, exc: RequestValidationError):
    fields = ", ".join(".".join(str(p) for p in err["loc"][1:]) or "body" for err in exc.errors())
    return JSONResponse(status_code=400, content={"error": f"Missing or invalid order fields: {fields}."})


# ── 依存関係 ─────────────────────────────────────

@dataclass(frozen=True)
class Identity:
    uid: str
    role: str
    email: str | None = None


def get_services(request: Request) -> Services:
    return request.app.state.services


async def current_identity(
    x_user_uid: str | None = Header(None),
    x_user_role: str | None = Header(None),
    x_user_email: str | None = Header(None),
) -> Identity:
    if not x_user_uid or not x_user_role:
        raise Unauthenticated("Authentication required.")
    return Identity(uid=x_user_uid, role=x_user_role, email=x_user_email)


def require_role(role: str):
    async def dependency(identity: Identity = Depends(current_identity)) -> Identity:
        if identity.role != role:
            raise PermissionDenied(f"This action requires the '{role}' role.")
        return identity
    return dependency


# ── Command Endpoints (Write 側) ─────────────────

@app.post("/orders", status_code=status.HTTP_201_CREATED, response_model=CreateOrderResponse)
async def cmd_place_order(
    req: CreateOrderRequest,
    response: Response,
    idempotency_key: str | None = Header(None),
    customer: Identity = Depends(require_role(CUSTOMER)),
    services: Services = Depends(get_services),
):
    """チェックアウト。同じ Idempotency-Key の再送は元の注文を返す（二重課金しない）。"""
    key = idempotency_key or str(uuid.uuid4())
    placed = await services.checkout.place_order(req.to_checkout(customer.uid, key))
    if placed.replayed:
        response.status_code = status.HTTP_200_OK
    return CreateOrderResponse.from_placed(placed)


@app.put("/operators/me/orders/{order_uid}/status", response_model=StatusResponse)
async def cmd_update_status(
    order_uid: str,
    req: UpdateStatusRequest,
    operator: Identity = Depends(require_role(OPERATOR)),
    services: Services = Depends(get_services),
):
    """オペレーターの状態更新。rejected / cancelled は返金と同時に確定する。"""
    async with services.session_factory() as session:
        result = await commands.update_status(
            session,
            services.payments,
            services.dispatcher,
            operator.uid,
            commands.StatusUpdate(
                order_uid=order_uid,
                new_status=req.new_status,
                reason=req.reason,
                updated_estimated_ready_time=req.updated_estimated_ready_time,
                updated_estimated_delivery_time=req.updated_estimated_delivery_time,
            ),
        )
    return StatusResponse.from_result(result)


@app.post("/orders/me/{order_uid}/request_cancellation", response_model=StatusResponse)
async def cmd_request_cancellation(
    order_uid: str,
    customer: Identity = Depends(require_role(CUSTOMER)),
    services: Services = Depends(get_services),
):
    async with services.session_factory() as session:
        result = await commands.request_cancellation(session, services.dispatcher, customer.uid, order_uid)
    return StatusResponse.from_result(result)


# ── Query Endpoints (Read 側) ────────────────────

@app.get("/orders/me/active")
async def query_active_orders(
    customer: Identity = Depends(require_role(CUSTOMER)),
    services: Services = Depends(get_services),
):
    async with services.session_factory() as session:
        return await queries.list_active_orders(session, customer.uid)


@app.get("/orders/me/history")
async def query_order_history(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    customer: Identity = Depends(require_role(CUSTOMER)),
    services: Services = Depends(get_services),
):
    async with services.session_factory() as session:
        return await queries.list_order_history(session, customer.uid, limit, offset)


@app.get("/orders/me/{order_uid}")
async def query_customer_order(
    order_uid: str,
    customer: Identity = Depends(require_role(CUSTOMER)),
    services: Services = Depends(get_services),
):
    async with services.session_factory() as session:
        return await queries.get_customer_order(session, customer.uid, order_uid)


@app.get("/operators/me/orders")
async def query_truck_orders(
    status_filter: str | None = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    operator: Identity = Depends(require_role(OPERATOR)),
    services: Services = Depends(get_services),
):
    """status: pending / active / completed またはカンマ区切りの状態リスト"""
    statuses = queries.parse_status_filter(status_filter)
    async with services.session_factory() as session:
        return await queries.list_truck_orders(session, operator.uid, statuses, limit, offset)


@app.get("/operators/me/orders/{order_uid}")
async def query_truck_order(
    order_uid: str,
    operator: Identity = Depends(require_role(OPERATOR)),
    services: Services = Depends(get_services),
):
    async with services.session_factory() as session:
        return await queries.get_truck_order(session, operator.uid, order_uid)


@app.get("/operators/me/orders/{order_uid}/events")
async def query_order_events(
    order_uid: str,
    operator: Identity = Depends(require_role(OPERATOR)),
    services: Services = Depends(get_services),
):
    """注文の監査ログ（イベント列と、そこから再構築した状態）"""
    async with services.session_factory() as session:
        return await queries.get_order_events(session, operator.uid, order_uid)


# ── 運用 ─────────────────────────────────────────

async def require_internal_token(x_internal_token: str | None = Header(None)) -> None:
    """運用エンドポイントは利用者ヘッダーではなく共有トークンで保護する"""
    if not x_internal_token:
        raise Unauthenticated("Internal token required.")
    if not config.INTERNAL_API_TOKEN or not secrets.compare_digest(x_internal_token, config.INTERNAL_API_TOKEN):
        raise PermissionDenied("Invalid internal token.")


@app.get("/internal/reconciliation/pending", dependencies=[Depends(require_internal_token)])
async def query_pending_reconciliation(services: Services = Depends(get_services)):
    async with services.session_factory() as session:
        return await reconciliation.list_pending(session)


@app.post("/internal/reconciliation/sweep", dependencies=[Depends(require_internal_token)])
async def cmd_reconciliation_sweep(services: Services = Depends(get_services)):
    """結果不明の課金を照会し、孤立した課金の返金を再試行する"""
    return await reconciliation.sweep(
        services.session_factory,
        services.payments,
        unconfirmed_grace_ms=config.RECONCILIATION_GRACE_SECONDS * 1000,
    )


@app.websocket("/ws")
async def realtime_events(websocket: WebSocket):
    uid = websocket.headers.get("x-user-uid")
    role = websocket.headers.get("x-user-role")
    if not uid or role not in (CUSTOMER, OPERATOR):
        await websocket.close(code=1008)
        return
    await websocket.accept()
    await stream_user_events(websocket, websocket.app.state.services.redis, role, uid)


@app.get("/health")
async def health(services: Services = Depends(get_services)):
    async with services.session_factory() as session:
        await session.execute(text("SELECT 1"))
    return {"status": "ok", "service": "order-service"}


def serve() -> None:
    """`order-service` コマンド（開発・単体起動用）"""
    uvicorn.run("app.main:app", host=config.HOST, port=config.PORT, log_level=config.LOG_LEVEL.lower())


if __name__ == "__main__":
    serve()
