"""Payment processor event intake."""

from datetime import UTC, datetime
import logging

from app.core.logging_safety import log_amount, safe_log_identifier
from app.errors import ApiError, ConcurrencyConflictError, CreditAlreadyAppliedError
from app.repositories.memory import InMemoryStore, PaymentEventRecord
from app.schemas.account import TransactionKind
from app.schemas.internal import PaymentEvent, PaymentEventResponse, PaymentKind
from app.services.ledger import LedgerService

logger = logging.getLogger(__name__)

_KIND_TO_TRANSACTION: dict[PaymentKind, TransactionKind] = {
    PaymentKind.PACKAGE: TransactionKind.PURCHASE,
    PaymentKind.TOPUP: TransactionKind.TOPUP,
}


def payment_source_ref(event_id: str) -> str:
    return f"payment:{event_id}"


def malformed_event_error(message: str, details: dict | None = None) -> ApiError:
    return ApiError(status_code=422, code="PAYMENT_EVENT_MALFORMED", message=message, details=details)


class PaymentEventService:
    """Applies completed purchases exactly once per processor event id."""

    def __init__(self, store: InMemoryStore, ledger: LedgerService) -> None:
        self._store = store
        self._ledger = ledger

    def process(self, event: PaymentEvent) -> PaymentEventResponse:
        safe_event_id = safe_log_identifier(event.event_id, prefix="eid")
        signature = self._signature(event)

        existing = self._store.get_payment_event(event.event_id)
        if existing is not None:
            return self._replay(existing, event=event, signature=signature)

        if event.kind is PaymentKind.PACKAGE and event.package_meta is None:
            logger.warning("payment.rejected event_id=%s code=PAYMENT_EVENT_MALFORMED reason=missing_package_meta", safe_event_id)
            raise malformed_event_error("Package purchase event requires package_meta.")
        if self._store.read_account(event.account_id) is None:
            logger.warning("payment.rejected event_id=%s code=PAYMENT_EVENT_MALFORMED reason=unknown_account", safe_event_id)
            raise malformed_event_error("Payment event references an unknown account.")

        source_ref = payment_source_ref(event.event_id)
        try:
            transaction = self._ledger.credit(
                account_id=event.account_id,
                kind=_KIND_TO_TRANSACTION[event.kind],
                amount=event.amount,
                description=self._describe(event),
                source_ref=source_ref,
                package=event.package_meta if event.kind is PaymentKind.PACKAGE else None,
            )
            transaction_id = transaction.id
            replayed = False
        except CreditAlreadyAppliedError:
            # A concurrent delivery of the same event won the commit.
            transaction_id = self._store.get_applied_source_ref(source_ref)
            replayed = True
        except ConcurrencyConflictError as exc:
            logger.warning("payment.deferred event_id=%s code=PAYMENT_EVENT_RETRYABLE", safe_event_id)
            raise ApiError(
                status_code=503,
                code="PAYMENT_EVENT_RETRYABLE",
                message="Account is busy; redeliver the event.",
            ) from exc

        self._store.record_payment_event(
            PaymentEventRecord(
                event_id=event.event_id,
                account_id=event.account_id,
                signature=signature,
                processed_at=datetime.now(UTC),
                transaction_id=transaction_id,
            )
        )
        logger.info(
            "payment.applied event_id=%s account_id=%s kind=%s amount=%s replayed=%s",
            safe_event_id,
            safe_log_identifier(event.account_id, prefix="aid"),
            event.kind.value,
            log_amount(event.amount),
            replayed,
        )
        return PaymentEventResponse(event_id=event.event_id, replayed=replayed, transaction_id=transaction_id)

    def _replay(
        self,
        existing: PaymentEventRecord,
        *,
        event: PaymentEvent,
        signature: tuple,
    ) -> PaymentEventResponse:
        safe_event_id = safe_log_identifier(event.event_id, prefix="eid")
        if existing.signature != signature:
            logger.warning("payment.rejected event_id=%s code=EVENT_ID_PAYLOAD_MISMATCH", safe_event_id)
            raise ApiError(
                status_code=409,
                code="EVENT_ID_PAYLOAD_MISMATCH",
                message="event_id replay payload differs from first accepted payload.",
                details={"event_id": event.event_id},
            )
        logger.info("payment.replayed event_id=%s", safe_event_id)
        return PaymentEventResponse(event_id=event.event_id, replayed=True, transaction_id=existing.transaction_id)

    @staticmethod
    def _signature(event: PaymentEvent) -> tuple:
        package_meta = event.package_meta.model_dump(mode="json") if event.package_meta is not None else None
        return (
            event.account_id,
            event.kind.value,
            str(event.amount.normalize()),
            tuple(sorted(package_meta.items())) if package_meta is not None else None,
        )

    @staticmethod
    def _describe(event: PaymentEvent) -> str:
        if event.package_meta is not None and event.kind is PaymentKind.PACKAGE:
            return f"Package purchase: {event.package_meta.name} ({event.package_meta.minutes} minutes)"
        return f"Wallet top-up: {event.amount}"
