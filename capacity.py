"""
Seat availability for a class, derived from the class's full booking set.

Only bookings that are both confirmed and paid hold a seat. Pending requests
reserve nothing, so two requests approved back to back can together exceed
capacity. The figure is recomputed on every read and never stored.
"""
from typing import Any, Dict, Iterable

from models import BookingStatus, PaymentStatus


def holds_seat(booking: Dict[str, Any]) -> bool:
    return (
        booking.get("status") == BookingStatus.CONFIRMED.value
        and booking.get("paymentStatus") == PaymentStatus.COMPLETED.value
    )


def confirmed_seats(class_id: str, bookings: Iterable[Dict[str, Any]]) -> int:
    return sum(
        int(b.get("studentCount") or 0)
        for b in bookings
        if b.get("classId") == class_id and holds_seat(b)
    )


def available_spots(cls: Dict[str, Any], bookings: Iterable[Dict[str, Any]]) -> int:
    return max(0, int(cls["maxStudents"]) - confirmed_seats(cls["id"], bookings))


def spots_summary(cls: Dict[str, Any], bookings: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    bookings = list(bookings)
    return {
        "maxStudents": int(cls["maxStudents"]),
        "confirmedBookings": confirmed_seats(cls["id"], bookings),
        "availableSpots": available_spots(cls, bookings),
    }
