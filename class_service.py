"""
Classes and user profiles: the records the booking core reads from.
"""
import logging
from typing import Any, Dict, List
from uuid import uuid4

from auth import Principal
from capacity import holds_seat, spots_summary
from errors import ActiveBookingsError, AuthorizationError, BookingValidationError, NotFoundError
from kv_store import BOOKING_PREFIX, CLASS_PREFIX, USER_PREFIX, KVStore
from models import ClassIn, ClassRecord, User, UserCreate, UserUpdate
from utils import utc_now_iso

logger = logging.getLogger("herd.classes")

# Stamped by the server; never taken from the request body.
OWNER_FIELDS = {"instructorId", "instructorName", "createdAt", "instructor_id", "instructor_name"}


class ClassService:
    def __init__(self, store: KVStore):
        self.store = store

    def get_class(self, class_id: str) -> Dict[str, Any]:
        cls = self.store.get(class_id) if class_id.startswith(CLASS_PREFIX) else None
        if cls is None:
            raise NotFoundError("Class not found", classId=class_id)
        return cls

    def _class_bookings(self, class_id: str) -> List[Dict[str, Any]]:
        return [b for b in self.store.get_by_prefix(BOOKING_PREFIX) if b.get("classId") == class_id]

    def _is_admin(self, principal: Principal) -> bool:
        user = self.store.get(USER_PREFIX + principal.id)
        return bool(user and user.get("isAdmin") is True)

    def create_class(self, principal: Principal, data: ClassIn) -> Dict[str, Any]:
        if not principal.email_verified:
            raise AuthorizationError("Email not verified")

        # Clients may create a class offline with their own id and sync it later.
        class_id = data.id or f"{CLASS_PREFIX}{uuid4().hex}"
        if not class_id.startswith(CLASS_PREFIX) or len(class_id) == len(CLASS_PREFIX):
            raise BookingValidationError(f"Class ids must start with '{CLASS_PREFIX}'")

        existing = self.store.get(class_id)
        if existing is not None and existing.get("instructorId") != principal.id:
            raise AuthorizationError("Access denied - you can only update your own classes")

        host = self.store.get(USER_PREFIX + principal.id) or {}
        fields = {
            k: v
            for k, v in data.model_dump(exclude={"id", "created_at"}).items()
            if k not in OWNER_FIELDS
        }
        record = ClassRecord(
            **fields,
            id=class_id,
            instructor_id=principal.id,
            instructor_name=host.get("name") or principal.name or None,
            created_at=data.created_at or (existing or {}).get("createdAt") or utc_now_iso(),
        ).to_record()
        self.store.set(class_id, record)
        logger.info("Class %s saved by %s", class_id, principal.id)
        return record

    def list_classes(self) -> List[Dict[str, Any]]:
        classes = self.store.get_by_prefix(CLASS_PREFIX)
        logger.info("Classes fetched: %d", len(classes))
        return classes

    def delete_class(self, principal: Principal, class_id: str) -> Dict[str, Any]:
        cls = self.get_class(class_id)
        is_admin = self._is_admin(principal)
        is_host = cls.get("instructorId") == principal.id
        if not is_admin and not is_host:
            raise AuthorizationError("Access denied - you can only delete your own classes")

        if not is_admin:
            active = [b for b in self._class_bookings(class_id) if holds_seat(b)]
            if active:
                raise ActiveBookingsError(
                    f"Cannot delete class. There are {len(active)} active paid booking(s). "
                    "Please contact students to cancel their bookings first.",
                    activeBookings=len(active),
                )

        self.store.delete(class_id)
        logger.info("Class deleted: %s by %s %s", class_id, "admin" if is_admin else "host", principal.id)
        return {"success": True, "message": "Class deleted successfully", "deletedClassId": class_id}

    def list_class_bookings(self, principal: Principal, class_id: str) -> List[Dict[str, Any]]:
        cls = self.get_class(class_id)
        if cls.get("instructorId") != principal.id and not self._is_admin(principal):
            raise AuthorizationError("Access denied - you can only view bookings for your own classes")
        return self._class_bookings(class_id)

    def available_spots(self, class_id: str) -> Dict[str, int]:
        cls = self.get_class(class_id)
        return spots_summary(cls, self._class_bookings(class_id))


class UserService:
    def __init__(self, store: KVStore):
        self.store = store

    def create_user(self, principal: Principal, data: UserCreate) -> Dict[str, Any]:
        if not principal.email_verified:
            raise AuthorizationError("Email not verified")
        user_id = data.id or principal.id
        if user_id != principal.id:
            raise AuthorizationError("Access denied - can only create your own profile")

        existing = self.store.get(USER_PREFIX + user_id)
        if existing is not None:
            return existing

        record = User(id=user_id, email=data.email, name=data.name, created_at=utc_now_iso()).to_record()
        self.store.set(USER_PREFIX + user_id, record)
        logger.info("User profile created: %s", user_id)
        return record

    def get_user(self, user_id: str) -> Dict[str, Any]:
        user = self.store.get(USER_PREFIX + user_id)
        if user is None:
            raise NotFoundError("User not found", userId=user_id)
        return user

    def update_user(self, principal: Principal, user_id: str, updates: UserUpdate) -> Dict[str, Any]:
        if not principal.email_verified:
            raise AuthorizationError("Email not verified")
        if principal.id != user_id:
            raise AuthorizationError("Access denied - can only update your own profile")
        user = self.get_user(user_id)
        user.update(updates.model_dump(by_alias=True, exclude_unset=True))
        self.store.set(USER_PREFIX + user_id, user)
        return user
