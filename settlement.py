"""
Payment settlement for bookings.

The platform keeps the herd fee and the host receives the subtotal. Funds
movement goes through a PaymentProcessor; the one shipped here simulates a
capture. Settlement is idempotent per booking id: the first caller claims
settlement:<booking id> before capturing, and any overlapping or later call
waits for and replays the receipt written there. The booking id is also handed
to the processor as its idempotency key so a capture that succeeded before the
receipt was written is not repeated.
"""
import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Protocol
from uuid import uuid4

from errors import SettlementError
from kv_store import SETTLEMENT_PREFIX, KVStore
from utils import to_cents, utc_now_iso

logger = logging.getLogger("herd.settlement")


@dataclass
class SettlementReceipt:
    booking_id: str
    external_reference: str
    total_cents: int
    platform_fee_cents: int
    host_payout_cents: int
    destination_account: str
    settled_at: str
    replayed: bool = False


class PaymentProcessor(Protocol):
    def capture(
        self,
        *,
        idempotency_key: str,
        amount_cents: int,
        platform_fee_cents: int,
        destination_account: str,
        metadata: Dict[str, str],
    ) -> str:
        """Move funds and return the processor's reference for the charge."""


class SimulatedProcessor:
    """Stand-in for a card processor: accepts every capture with a payout account.

    Like a real processor it answers a repeated idempotency key with the
    reference of the first capture. Free bookings capture 0 cents.
    """

    def __init__(self, delay_seconds: float = 0.0):
        self.delay_seconds = delay_seconds
        self._references: Dict[str, str] = {}
        self._lock = threading.Lock()

    def capture(self, *, idempotency_key, amount_cents, platform_fee_cents, destination_account, metadata):
        if not destination_account:
            raise SettlementError("Host has no connected payout account")
        if amount_cents < 0:
            raise SettlementError("Capture amount cannot be negative")
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        with self._lock:
            return self._references.setdefault(idempotency_key, f"pi_simulated_{uuid4().hex[:24]}")


class SettlementService:
    def __init__(
        self,
        store: KVStore,
        processor: Optional[PaymentProcessor] = None,
        wait_seconds: float = 30.0,
        poll_seconds: float = 0.05,
    ):
        self.store = store
        self.processor = processor or SimulatedProcessor()
        self.wait_seconds = wait_seconds
        self.poll_seconds = poll_seconds

    def lookup(self, booking_id: str) -> Optional[SettlementReceipt]:
        record = self.store.get(SETTLEMENT_PREFIX + booking_id)
        # A claim without a reference is a capture still in flight.
        if record is None or not record.get("external_reference"):
            return None
        return SettlementReceipt(**{**record, "replayed": True})

    def _await_receipt(self, booking_id: str) -> SettlementReceipt:
        deadline = time.monotonic() + self.wait_seconds
        while time.monotonic() < deadline:
            record = self.store.get(SETTLEMENT_PREFIX + booking_id)
            if record is None:
                raise SettlementError("Payment processing failed for this booking", bookingId=booking_id)
            if record.get("external_reference"):
                logger.info("Settlement for %s finished by a concurrent call", booking_id)
                return SettlementReceipt(**{**record, "replayed": True})
            time.sleep(self.poll_seconds)
        raise SettlementError("Payment for this booking is still being processed", bookingId=booking_id)

    def settle(self, booking: Dict[str, Any], cls: Dict[str, Any], host: Dict[str, Any]) -> SettlementReceipt:
        booking_id = booking["id"]
        key = SETTLEMENT_PREFIX + booking_id
        existing = self.lookup(booking_id)
        if existing is not None:
            logger.info("Settlement replayed for %s: %s", booking_id, existing.external_reference)
            return existing

        if not self.store.claim(key, {"booking_id": booking_id, "claimed_at": utc_now_iso()}):
            logger.info("Settlement for %s already in progress, waiting", booking_id)
            return self._await_receipt(booking_id)

        platform_fee = to_cents(booking["herdFee"])
        host_payout = to_cents(booking["subtotal"])
        total = platform_fee + host_payout
        destination = host.get("stripeAccountId") or ""

        logger.info(
            "Settling %s: total=%d host=%d platform=%d dest=%s",
            booking_id, total, host_payout, platform_fee, destination,
        )
        try:
            reference = self.processor.capture(
                idempotency_key=booking_id,
                amount_cents=total,
                platform_fee_cents=platform_fee,
                destination_account=destination,
                metadata={"booking_id": booking_id, "class_id": cls["id"]},
            )
        except SettlementError:
            self.store.delete(key)
            raise
        except Exception as exc:
            self.store.delete(key)
            raise SettlementError(f"Payment processing failed: {exc}") from exc

        receipt = SettlementReceipt(
            booking_id=booking_id,
            external_reference=reference,
            total_cents=total,
            platform_fee_cents=platform_fee,
            host_payout_cents=host_payout,
            destination_account=destination,
            settled_at=utc_now_iso(),
        )
        record = asdict(receipt)
        record.pop("replayed")
        self.store.set(key, record)
        logger.info("Settlement complete for %s: %s", booking_id, reference)
        return receipt
