from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .config import Settings
from .gateway_client import GatewayClient, GatewayError, GatewayVerdict
from .notifier import NotificationError, Notifier, record_channel, user_channel
from .repository import (
    EXPIRED,
    FAILED,
    PENDING,
    REFUND,
    SUCCESS,
    DepositRecord,
    PaymentRepository,
    TransactionRecord,
    utcnow,
)

logger = logging.getLogger(__name__)

TRANSACTION = "transaction"
DEPOSIT = "deposit"

UPDATED = "updated"
UNCHANGED = "unchanged"
ERROR = "error"

GATEWAY_ERROR = "gateway_error"

_EVENTS = {
    SUCCESS: "payment.paid",
    FAILED: "payment.failed",
    EXPIRED: "payment.expired",
    REFUND: "payment.refunded",
}


class PaymentNotFound(Exception):
    """Raised when no deposit or transaction matches a lookup."""


class RefundError(Exception):
    """Raised when a refund is not possible."""


@dataclass(frozen=True)
class RecordOutcome:
    kind: str
    record_id: int
    reference: str
    result: str
    status: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SyncReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcomes: list[RecordOutcome] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def checked(self) -> int:
        return len(self.outcomes)

    @property
    def updated(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.result == UPDATED)

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.result == ERROR)

    @property
    def gateway_errors(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.reason == GATEWAY_ERROR)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "checked": self.checked,
            "updated": self.updated,
            "failed": self.failed,
            "gateway_errors": self.gateway_errors,
            "error": self.error,
            "outcomes": [asdict(outcome) for outcome in self.outcomes],
        }


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def expiry_threshold(
    created_at: str,
    expired_at: str | None,
    timeout_seconds: float,
    buffer_seconds: float,
) -> datetime:
    """Point in time after which an unresolved payment is force-expired."""
    if expired_at:
        deadline = parse_timestamp(expired_at)
    else:
        deadline = parse_timestamp(created_at) + timedelta(seconds=timeout_seconds)
    return deadline + timedelta(seconds=buffer_seconds)


class PaymentSynchronizer:
    """Reconciles pending transactions and deposits against the gateway."""

    def __init__(
        self,
        repository: PaymentRepository,
        gateway: GatewayClient,
        notifier: Notifier,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._repo = repository
        self._gateway = gateway
        self._notifier = notifier
        self._settings = settings or Settings()
        self._sleep = sleep

    def sync(self, now: datetime | None = None) -> SyncReport:
        now = _aware(now or utcnow())
        report = SyncReport(started_at=now)
        settings = self._settings

        created_before = None
        if settings.sync_min_age_seconds > 0:
            created_before = now - timedelta(seconds=settings.sync_min_age_seconds)

        try:
            deposits = self._repo.list_pending_deposits(settings.sync_batch_limit, created_before)
            transactions = self._repo.list_pending_transactions(
                settings.sync_batch_limit, created_before
            )
        except Exception as exc:
            logger.exception("Loading pending payments failed")
            report.error = str(exc)
            report.finished_at = utcnow()
            return report

        work: list = [(self.sync_deposit, deposit) for deposit in deposits]
        work.extend((self.sync_transaction, trx) for trx in transactions)

        for index, (handler, record) in enumerate(work):
            if index and settings.sync_pace_seconds > 0:
                self._sleep(settings.sync_pace_seconds)
            report.outcomes.append(handler(record, now))

        report.finished_at = utcnow()
        return report

    def sync_transaction(self, record: TransactionRecord, now: datetime | None = None) -> RecordOutcome:
        now = _aware(now or utcnow())
        try:
            verdict, gateway_error = self._verdict(
                record.order_id, record.amount, record.payment_method
            )
            threshold = expiry_threshold(
                record.created_at,
                record.expired_at,
                self._settings.payment_timeout_seconds,
                self._settings.expiry_buffer_seconds,
            )
            return self._apply(
                TRANSACTION,
                record,
                record.order_id,
                verdict,
                now >= threshold,
                self._repo.complete_transaction,
                self._repo.close_transaction,
                now,
                gateway_error,
            )
        except Exception as exc:
            logger.exception("Reconciling transaction %s failed", record.order_id)
            return RecordOutcome(TRANSACTION, record.id, record.order_id, ERROR, error=str(exc))

    def sync_deposit(self, record: DepositRecord, now: datetime | None = None) -> RecordOutcome:
        now = _aware(now or utcnow())
        try:
            verdict, gateway_error = self._verdict(
                record.ref_id, record.amount, record.payment_channel
            )
            threshold = expiry_threshold(
                record.created_at,
                None,
                self._settings.payment_timeout_seconds,
                self._settings.expiry_buffer_seconds,
            )
            return self._apply(
                DEPOSIT,
                record,
                record.ref_id,
                verdict,
                now >= threshold,
                self._repo.complete_deposit,
                self._repo.close_deposit,
                now,
                gateway_error,
            )
        except Exception as exc:
            logger.exception("Reconciling deposit %s failed", record.ref_id)
            return RecordOutcome(DEPOSIT, record.id, record.ref_id, ERROR, error=str(exc))

    def _verdict(
        self, reference: str, amount: float, channel: str | None
    ) -> tuple[GatewayVerdict, str | None]:
        try:
            return self._gateway.check_status(reference, amount, channel).verdict, None
        except GatewayError as exc:
            logger.warning("No gateway verdict for %s: %s", reference, exc)
            return GatewayVerdict.UNKNOWN, str(exc)

    def _apply(
        self, kind, record, reference, verdict, overdue, complete, close, now, gateway_error=None
    ) -> RecordOutcome:
        if verdict is GatewayVerdict.SUCCESS:
            status, reason, changed = SUCCESS, "gateway", complete(record.id)
        elif verdict is GatewayVerdict.FAILED:
            status, reason, changed = FAILED, "gateway", close(record.id, FAILED)
        elif verdict is GatewayVerdict.EXPIRED:
            status, reason, changed = EXPIRED, "gateway", close(record.id, EXPIRED)
        elif overdue:
            status, reason, changed = EXPIRED, "timeout", close(record.id, EXPIRED)
        elif gateway_error is not None:
            return RecordOutcome(
                kind,
                record.id,
                reference,
                UNCHANGED,
                status=PENDING,
                reason=GATEWAY_ERROR,
                error=gateway_error,
            )
        else:
            logger.debug("%s %s still pending", kind, reference)
            return RecordOutcome(kind, record.id, reference, UNCHANGED, status=PENDING)

        if not changed:
            logger.info("%s %s already settled elsewhere", kind, reference)
            return RecordOutcome(kind, record.id, reference, UNCHANGED, reason="already_processed")

        logger.info("%s %s -> %s (%s)", kind, reference, status, reason)
        self._notify(kind, record, reference, status, reason, now)
        return RecordOutcome(kind, record.id, reference, UPDATED, status=status, reason=reason)

    def _notify(self, kind, record, reference, status, reason, now) -> None:
        payload = {
            "type": _EVENTS[status],
            "kind": kind,
            "id": record.id,
            "reference": reference,
            "status": status,
            "amount": record.amount,
            "user_id": record.user_id,
            "reason": reason,
            "at": now.isoformat(),
        }
        channels = [record_channel(reference)]
        if record.user_id is not None:
            channels.append(user_channel(record.user_id))
        for channel in channels:
            try:
                self._notifier.publish(channel, payload)
            except NotificationError as exc:
                logger.warning("Notification for %s %s not sent: %s", kind, reference, exc)

    def refund(self, order_id: str) -> TransactionRecord:
        record = self._repo.get_transaction(order_id)
        if record is None:
            raise PaymentNotFound(f"Transaction {order_id} not found.")
        if record.status == REFUND:
            return record
        if record.status != SUCCESS:
            raise RefundError(f"Only paid transactions can be refunded (status {record.status}).")
        if not self._repo.refund_transaction(record.id):
            raise RefundError("Transaction changed while refunding.")

        logger.info("transaction %s -> %s", order_id, REFUND)
        self._notify(TRANSACTION, record, order_id, REFUND, "manual", utcnow())
        updated = self._repo.get_transaction_by_id(record.id)
        assert updated is not None
        return updated

    def check(
        self,
        *,
        ref_id: str | None = None,
        deposit_id: int | None = None,
        order_id: str | None = None,
        now: datetime | None = None,
    ) -> tuple[str, TransactionRecord | DepositRecord]:
        """Look a payment up, reconciling it first while it is still pending."""
        if deposit_id is not None or (ref_id and not order_id):
            deposit = (
                self._repo.get_deposit_by_id(deposit_id)
                if deposit_id is not None
                else self._repo.get_deposit(ref_id)
            )
            if deposit is not None:
                if deposit.status == PENDING:
                    self.sync_deposit(deposit, now)
                    deposit = self._repo.get_deposit_by_id(deposit.id) or deposit
                return DEPOSIT, deposit

        reference = order_id or ref_id
        if reference:
            trx = self._repo.get_transaction(reference)
            if trx is not None:
                if trx.status == PENDING:
                    self.sync_transaction(trx, now)
                    trx = self._repo.get_transaction_by_id(trx.id) or trx
                return TRANSACTION, trx

        raise PaymentNotFound("Payment not found.")


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
