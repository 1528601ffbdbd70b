"""
Seed a demo host, a demo guest and three classes (Sourdough, Goat Milking, Canning).
- Default: Adds missing records only.
- --force: Rewrites the classes and removes every booking.
Prints a bearer token for each demo user.
"""

import sys
from datetime import datetime, timedelta

from auth import SessionStore
from config import get_settings
from kv_store import BOOKING_PREFIX, CLASS_PREFIX, USER_PREFIX, KVStore
from utils import utc_now_iso

HOST_ID = "demo-host"
GUEST_ID = "demo-guest"

CLASSES = [
    ("class:demo-sourdough", "Sourdough Basics", 1, 6, 50.0, True),
    ("class:demo-goat-milking", "Goat Milking 101", 2, 4, 35.0, False),
    ("class:demo-canning", "Water Bath Canning", 3, 8, 40.0, True),
]


def clear_bookings(store: KVStore):
    """Delete every booking record."""
    bookings = store.get_by_prefix(BOOKING_PREFIX)
    for b in bookings:
        store.delete(b["id"])
    print(f"Cleared {len(bookings)} bookings.")


def seed_users(store: KVStore):
    users = [
        {"id": HOST_ID, "email": "host@example.com", "name": "Hannah Host",
         "stripeConnected": True, "stripeAccountId": "acct_demo_host"},
        {"id": GUEST_ID, "email": "guest@example.com", "name": "Gary Guest",
         "stripeConnected": False, "stripeAccountId": None},
    ]
    for u in users:
        if store.get(USER_PREFIX + u["id"]) is None:
            store.set(USER_PREFIX + u["id"], {**u, "isAdmin": False, "createdAt": utc_now_iso()})
            print(f"Seeded user: {u['name']}")


def seed_classes(store: KVStore, force=False):
    today = datetime.now().date()
    existing_ids = {c["id"] for c in store.get_by_prefix(CLASS_PREFIX)}

    if force:
        clear_bookings(store)

    for class_id, title, days_out, max_students, price, auto in CLASSES:
        if force or class_id not in existing_ids:
            start = today + timedelta(days=days_out)
            store.set(class_id, {
                "id": class_id,
                "title": title,
                "description": "",
                "startDate": start.isoformat(),
                "startTime": "09:00",
                "address": "Willow Creek Farm",
                "maxStudents": max_students,
                "pricePerPerson": price,
                "autoApproveBookings": auto,
                "photos": [],
                "instructorId": HOST_ID,
                "instructorName": "Hannah Host",
                "createdAt": utc_now_iso(),
            })
            print(f"Seeded: {title} on {start.strftime('%d %b %Y')}")


if __name__ == "__main__":
    force_flag = "--force" in sys.argv
    store = KVStore(get_settings().db_path)
    store.init_db()
    seed_users(store)
    seed_classes(store, force=force_flag)
    sessions = SessionStore(store)
    print(f"Host token:  {sessions.issue(HOST_ID, 'host@example.com', 'Hannah Host')}")
    print(f"Guest token: {sessions.issue(GUEST_ID, 'guest@example.com', 'Gary Guest')}")
