"""
Booking lifecycle: request -> settle -> notify.

A booking is created in one of two ways, fixed by the class's
autoApproveBookings flag at the moment of the request (the flag is copied
onto the booking and never re-read):

  auto-approve   stored as confirmed/pending, settled immediately, then
                 confirmed/completed or failed/failed.
  manual         stored as pending/pending; the host later approves (settle,
                 then confirmed/completed or failed/failed) or denies
                 (denied, payment never attempted).

confirmed (once paid), denied and failed are terminal. There is no
cancellation or refund path.

Capacity is only advisory: nothing here stops two approvals from together
taking more seats than the class has, unless `enforce_capacity` is enabled.
The store has no multi-key transactions, so even that check is best effort.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import uuid4

from auth import Principal
from capacity import available_spots
from config import Settings
from errors import (
    AuthorizationError,
    BookingValidationError,
    CapacityExceededError,
    HostPaymentNotReadyError,
    InvalidTransitionError,
    NotFoundError,
    SettlementError,
)
from kv_store import BOOKING_PREFIX, CLASS_PREFIX, REQUEST_PREFIX, USER_PREFIX, KVStore
from models import BookRequest, Booking, BookingStatus, PaymentStatus
from notifications import Notification, NotificationTemplate
from settlement import SettlementService
from utils import amounts_match, price_breakdown, utc_now_iso

logger = logging.getLogger("herd.bookings")

TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.DENIED, BookingStatus.FAILED},
    # Only the tentative auto-approve record, before its payment completes.
    BookingStatus.CONFIRMED: {BookingStatus.FAILED},
    BookingStatus.DENIED: set(),
    BookingStatus.FAILED: set(),
}


def assert_transition(booking: Dict[str, Any], target: BookingStatus) -> None:
    current = BookingStatus(booking["status"])
    paid = booking.get("paymentStatus") == PaymentStatus.COMPLETED.value
    if target not in TRANSITIONS[current] or paid:
        raise InvalidTransitionError(
            f"Booking is already {current.value} and cannot become {target.value}",
            bookingId=booking["id"],
            status=current.value,
        )


@dataclass
class Outcome:
    """Result of a state change plus the messages to send once it is stored"""

    booking: Dict[str, Any]
    message: str
    notifications: List[Notification] = field(default_factory=list)


class BookingService:
    def __init__(self, store: KVStore, settlement: SettlementService, settings: Settings):
        self.store = store
        self.settlement = settlement
        self.settings = settings

    # ---------- Lookups ----------
    def _get_class(self, class_id: str) -> Dict[str, Any]:
        cls = self.store.get(class_id) if class_id.startswith(CLASS_PREFIX) else None
        if cls is None:
            logger.warning("Class not found: %s", class_id)
            raise NotFoundError(f"Class not found. Class ID '{class_id}' does not exist.", classId=class_id)
        return cls

    def _get_booking(self, booking_id: str) -> Dict[str, Any]:
        booking = self.store.get(booking_id) if booking_id.startswith(BOOKING_PREFIX) else None
        if booking is None:
            raise NotFoundError("Booking not found", bookingId=booking_id)
        return booking

    def _get_user(self, user_id: str, what: str) -> Dict[str, Any]:
        user = self.store.get(USER_PREFIX + user_id)
        if user is None:
            raise NotFoundError(f"{what} not found", userId=user_id)
        return user

    def _all_bookings(self) -> List[Dict[str, Any]]:
        return self.store.get_by_prefix(BOOKING_PREFIX)

    # ---------- Guards ----------
    @staticmethod
    def _require_payment_ready(host: Dict[str, Any]) -> None:
        if not host.get("stripeConnected") or not host.get("stripeAccountId"):
            logger.info("Host payment setup incomplete: %s (%s)", host.get("id"), host.get("name"))
            raise HostPaymentNotReadyError(host)

    @staticmethod
    def _validate_students(cls: Dict[str, Any], count: int, names: List[str]) -> None:
        max_students = int(cls["maxStudents"])
        if count <= 0 or count > max_students:
            raise BookingValidationError(
                f"Student count must be between 1 and {max_students}",
                maxStudents=max_students,
            )
        if len(names) != count:
            raise BookingValidationError("Please provide one name per student")
        if any(not (n or "").strip() for n in names):
            raise BookingValidationError("Student names cannot be blank")

    def _check_capacity(self, cls: Dict[str, Any], count: int) -> None:
        if not self.settings.enforce_capacity:
            return
        spots = available_spots(cls, self._all_bookings())
        if count > spots:
            raise CapacityExceededError(
                f"Only {spots} spot(s) left in this class",
                availableSpots=spots,
            )

    # ---------- Settlement ----------
    def _settle(self, booking: Dict[str, Any], cls: Dict[str, Any], host: Dict[str, Any]) -> Dict[str, Any]:
        """Capture payment, then mark the booking confirmed and paid.

        On failure the booking is stored as failed/failed and SettlementError
        propagates. paymentStatus only becomes completed after a receipt exists.
        """
        try:
            receipt = self.settlement.settle(booking, cls, host)
        except SettlementError as exc:
            assert_transition(booking, BookingStatus.FAILED)
            booking["status"] = BookingStatus.FAILED.value
            booking["paymentStatus"] = PaymentStatus.FAILED.value
            self.store.set(booking["id"], booking)
            exc.extra["booking"] = booking
            raise

        if booking["status"] != BookingStatus.CONFIRMED.value:
            assert_transition(booking, BookingStatus.CONFIRMED)
        booking["status"] = BookingStatus.CONFIRMED.value
        booking["paymentStatus"] = PaymentStatus.COMPLETED.value
        booking["paymentReference"] = receipt.external_reference
        booking["approvedAt"] = utc_now_iso()
        self.store.set(booking["id"], booking)
        return booking

    # ---------- Create ----------
    def _replay_request(self, principal: Principal, request_id: Optional[str]) -> Optional[Outcome]:
        if not request_id:
            return None
        marker = self.store.get(f"{REQUEST_PREFIX}{principal.id}:{request_id}")
        if marker is None:
            return None
        booking = self.store.get(marker["bookingId"])
        if booking is None:
            return None
        logger.info("Replaying booking %s for request %s", booking["id"], request_id)
        if booking["status"] == BookingStatus.FAILED.value:
            # Same answer as the first attempt got.
            raise SettlementError("Payment processing failed for this booking", booking=booking)
        return Outcome(booking, status_message(booking))

    def create_booking(self, principal: Principal, req: BookRequest) -> Outcome:
        if not principal.email_verified:
            raise AuthorizationError("Email not verified")

        replay = self._replay_request(principal, req.request_id)
        if replay is not None:
            return replay

        logger.info("Processing booking request for class %s by %s", req.class_id, principal.id)
        cls = self._get_class(req.class_id)
        self._validate_students(cls, req.student_count, req.student_names)
        guest = self._get_user(principal.id, "User profile")
        host = self._get_user(cls["instructorId"], "Host")
        self._require_payment_ready(host)

        subtotal, herd_fee, total = price_breakdown(
            cls["pricePerPerson"], req.student_count, self.settings.fee_rate
        )
        for supplied, expected in ((req.subtotal, subtotal), (req.herd_fee, herd_fee), (req.total_amount, total)):
            if not amounts_match(expected, supplied):
                raise BookingValidationError(
                    "Booking amounts do not match the class price",
                    expected={"subtotal": subtotal, "herdFee": herd_fee, "totalAmount": total},
                )

        auto_approve = bool(cls.get("autoApproveBookings", True))
        if req.auto_approve is not None and req.auto_approve != auto_approve:
            logger.info("Client policy %s ignored; class %s uses %s", req.auto_approve, cls["id"], auto_approve)
        self._check_capacity(cls, req.student_count)

        booking = Booking(
            id=f"{BOOKING_PREFIX}{uuid4().hex}",
            class_id=cls["id"],
            user_id=principal.id,
            user_email=guest.get("email") or principal.email,
            user_name=guest.get("name") or principal.name,
            host_id=cls["instructorId"],
            host_email=host.get("email", ""),
            host_name=host.get("name", ""),
            student_count=req.student_count,
            student_names=[n.strip() for n in req.student_names],
            subtotal=subtotal,
            herd_fee=herd_fee,
            total_amount=total,
            status=BookingStatus.CONFIRMED if auto_approve else BookingStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            auto_approve=auto_approve,
            created_at=utc_now_iso(),
            request_id=req.request_id,
        ).to_record()
        self.store.set(booking["id"], booking)
        if req.request_id:
            self.store.set(
                f"{REQUEST_PREFIX}{principal.id}:{req.request_id}",
                {"bookingId": booking["id"], "createdAt": booking["createdAt"]},
            )

        if not auto_approve:
            logger.info("Booking %s awaiting host %s approval", booking["id"], host.get("id"))
            return Outcome(
                booking,
                status_message(booking),
                [Notification(NotificationTemplate.APPROVAL_REQUEST, booking, cls, host)],
            )

        try:
            self._settle(booking, cls, host)
        except SettlementError:
            logger.error("Payment failed for auto-approved booking %s", booking["id"])
            raise
        logger.info("Booking %s confirmed and paid", booking["id"])
        return Outcome(
            booking,
            status_message(booking),
            [
                Notification(NotificationTemplate.CONFIRMED_GUEST, booking, cls, guest),
                Notification(NotificationTemplate.CONFIRMED_HOST, booking, cls, host),
            ],
        )

    # ---------- Respond ----------
    def respond_to_booking(self, principal: Principal, booking_id: str, action: str, message: Optional[str] = None) -> Outcome:
        booking = self._get_booking(booking_id)
        cls = self._get_class(booking["classId"])

        # Host only; admins do not respond on a host's behalf.
        if cls["instructorId"] != principal.id:
            raise AuthorizationError("Access denied - only the class host can respond to bookings")
        guest = self._get_user(booking["userId"], "Guest")
        if booking["status"] != BookingStatus.PENDING.value:
            raise InvalidTransitionError(
                f"Booking has already been {booking['status']}",
                bookingId=booking["id"],
                status=booking["status"],
            )

        if action == "approve":
            host = self._get_user(principal.id, "Host")
            self._require_payment_ready(host)
            self._check_capacity(cls, int(booking["studentCount"]))
            try:
                self._settle(booking, cls, host)
            except SettlementError:
                logger.error(
                    "Payment failed while host %s approved booking %s; guest %s has not been notified",
                    principal.id, booking["id"], booking["userId"],
                )
                raise
            logger.info("Booking %s approved by host %s", booking["id"], principal.id)
            return Outcome(
                booking,
                "Booking approved and payment processed",
                [Notification(NotificationTemplate.CONFIRMED_GUEST, booking, cls, guest)],
            )

        if action in ("deny", "decline"):
            assert_transition(booking, BookingStatus.DENIED)
            booking["status"] = BookingStatus.DENIED.value
            booking["deniedAt"] = utc_now_iso()
            booking["hostMessage"] = message or None
            self.store.set(booking["id"], booking)
            logger.info("Booking %s denied by host %s", booking["id"], principal.id)
            return Outcome(
                booking,
                "Booking denied",
                [Notification(NotificationTemplate.DENIED_GUEST, booking, cls, guest)],
            )

        raise BookingValidationError("Invalid action - must be approve, decline, or deny")

    # ---------- Queries ----------
    def list_user_bookings(self, principal: Principal, user_id: str) -> List[Dict[str, Any]]:
        if principal.id != user_id:
            raise AuthorizationError("Access denied - can only view your own bookings")
        return [b for b in self._all_bookings() if user_id in (b.get("userId"), b.get("hostId"))]


def status_message(booking: Dict[str, Any]) -> str:
    if booking["status"] == BookingStatus.PENDING.value:
        return "Booking request submitted. The host will review your request."
    if booking["paymentStatus"] == PaymentStatus.COMPLETED.value:
        return "Booking confirmed and payment processed"
    return f"Booking {booking['status']}"
