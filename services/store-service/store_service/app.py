from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, status

from .config import Settings
from .database import connection_factory, init_db
from .gateway_client import GatewayClient, HTTPGatewayClient, MockGatewayClient
from .notifier import LogNotifier, Notifier, RedisNotifier
from .repository import DepositRecord, PaymentRepository
from .scheduler import ReconciliationScheduler
from .schemas import (
    HealthResponse,
    PaymentConfigResponse,
    PaymentStatusResponse,
    PaymentSummary,
    SyncReportSummary,
    TransactionSummary,
)
from .synchronizer import PaymentNotFound, PaymentSynchronizer, RefundError

logger = logging.getLogger(__name__)


def build_gateway(settings: Settings) -> GatewayClient:
    if settings.gateway_mode == "http":
        if not settings.gateway_merchant_id or not settings.gateway_secret:
            raise RuntimeError(
                "GATEWAY_MERCHANT_ID and GATEWAY_SECRET must be set when GATEWAY_MODE=http"
            )
        return HTTPGatewayClient(
            settings.gateway_url,
            settings.gateway_merchant_id,
            settings.gateway_secret,
            timeout=settings.gateway_timeout_seconds,
        )
    return MockGatewayClient(settings.mock_gateway_status)


def build_notifier(settings: Settings) -> Notifier:
    if settings.notifier_mode == "log":
        return LogNotifier()
    return RedisNotifier(settings.redis_url)


def create_app(
    settings: Settings | None = None,
    *,
    gateway: GatewayClient | None = None,
    notifier: Notifier | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    factory = connection_factory(settings.database_url)
    init_db(factory)

    owned = []
    if gateway is None:
        gateway = build_gateway(settings)
        owned.append(gateway)
    if notifier is None:
        notifier = build_notifier(settings)
        owned.append(notifier)

    repository = PaymentRepository(factory)
    synchronizer = PaymentSynchronizer(repository, gateway, notifier, settings)
    scheduler = ReconciliationScheduler(synchronizer.sync, settings.sync_interval_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.scheduler_enabled:
            scheduler.start()
        else:
            logger.info("Reconciliation scheduler disabled")
        yield
        scheduler.stop(timeout=5.0)
        for client in owned:
            client.close()

    app = FastAPI(
        title="Store Service",
        version="0.1.0",
        description="Reconciles pending payments and deposits with the payment gateway.",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.repository = repository
    app.state.gateway = gateway
    app.state.notifier = notifier
    app.state.synchronizer = synchronizer
    app.state.scheduler = scheduler

    def get_synchronizer() -> PaymentSynchronizer:
        return synchronizer

    @app.get("/healthz", response_model=HealthResponse)
    async def healthz() -> HealthResponse:
        return HealthResponse()

    @app.get("/config/payment", response_model=PaymentConfigResponse)
    async def payment_config() -> PaymentConfigResponse:
        return PaymentConfigResponse(
            payment_timeout_minutes=settings.payment_timeout_minutes_client
        )

    @app.post("/payments/sync", response_model=SyncReportSummary)
    def run_sync(
        sync: PaymentSynchronizer = Depends(get_synchronizer),
    ) -> SyncReportSummary:
        report = sync.sync()
        if report.error:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Failed to sync: {report.error}",
            )
        return SyncReportSummary(**report.to_dict())

    @app.get("/payments/status", response_model=PaymentStatusResponse)
    def payment_status(
        ref_id: Optional[str] = None,
        deposit_id: Optional[int] = None,
        order_id: Optional[str] = None,
        sync: PaymentSynchronizer = Depends(get_synchronizer),
    ) -> PaymentStatusResponse:
        if not ref_id and deposit_id is None and not order_id:
            raise HTTPException(
                status_code=400, detail="ref_id, deposit_id, or order_id is required"
            )
        try:
            kind, record = sync.check(ref_id=ref_id, deposit_id=deposit_id, order_id=order_id)
        except PaymentNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc))

        if isinstance(record, DepositRecord):
            reference = record.ref_id
        else:
            reference = record.order_id
        return PaymentStatusResponse(
            type=kind,
            payment=PaymentSummary(
                id=record.id,
                reference=reference,
                amount=record.amount,
                status=record.status,
                created_at=record.created_at,
            ),
        )

    @app.post("/transactions/{order_id}/refund", response_model=TransactionSummary)
    def refund_transaction(
        order_id: str,
        sync: PaymentSynchronizer = Depends(get_synchronizer),
    ) -> TransactionSummary:
        try:
            record = sync.refund(order_id)
        except PaymentNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        except RefundError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return TransactionSummary(
            id=record.id,
            order_id=record.order_id,
            user_id=record.user_id,
            amount=record.amount,
            status=record.status,
            assigned_stocks=record.assigned_stocks,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    return app
