"""Async HTTP client for the HERD booking API, backed by the local cache.

Every call races the server against a timer. A timeout is reported as its own
outcome (the server may still have done the work), transport failures and
gateway errors are retried with capped backoff, and reads fall back to cached
data rather than failing.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable
from uuid import uuid4

import httpx

from config import ClientSettings
from local_cache import LocalCache, LocalStorage, merge_entities
from utils import utc_now_iso

logger = logging.getLogger("herd.client")

RETRYABLE_STATUS = {502, 503, 504}
# Any server-side failure is worth another try when loading the profile.
PROFILE_RETRY_STATUS = RETRYABLE_STATUS | {500}


class ClientError(Exception):
    """Base error for client request failures."""


class RequestTimeout(ClientError):
    """The call did not answer in time; its outcome on the server is unknown."""


class TransportError(ClientError):
    """The request never got a response (connection refused, reset, DNS)."""


class ApiError(ClientError):
    """The server answered with an error status."""

    def __init__(self, status_code: int, message: str, payload: dict | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.payload = payload or {}


class ServerError(ApiError):
    """Gateway-type failure worth retrying."""


@dataclass
class AuthSession:
    user_id: str
    email: str
    access_token: str
    name: str | None = None


@dataclass
class RetryPolicy:
    base_timeout: float = 10.0
    timeout_step: float = 5.0
    max_retries: int = 2
    backoff_base: float = 3.0
    backoff_factor: float = 1.5
    backoff_cap: float = 8.0

    @classmethod
    def from_settings(cls, settings: ClientSettings) -> RetryPolicy:
        return cls(
            base_timeout=settings.base_timeout,
            timeout_step=settings.timeout_step,
            max_retries=settings.max_retries,
            backoff_base=settings.backoff_base,
            backoff_factor=settings.backoff_factor,
            backoff_cap=settings.backoff_cap,
        )

    def timeout_for(self, attempt: int) -> float:
        return self.base_timeout + attempt * self.timeout_step

    def backoff_for(self, attempt: int) -> float:
        return min(self.backoff_base * self.backoff_factor**attempt, self.backoff_cap)


def fallback_user(session: AuthSession) -> dict:
    """Minimal profile rebuilt from the auth session alone."""
    return {
        "id": session.user_id,
        "email": session.email,
        "name": session.name or session.email.split("@")[0] or "User",
        "stripeConnected": False,
        "isAdmin": False,
        "createdAt": utc_now_iso(),
        "offline": True,
    }


class HerdClient:
    """Client for the booking API with optimistic local writes."""

    def __init__(
        self,
        settings: ClientSettings,
        session: AuthSession | None = None,
        cache: LocalCache | None = None,
        http: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.session = session
        self.policy = RetryPolicy.from_settings(settings)
        self.cache = cache or LocalCache(
            LocalStorage(settings.cache_dir / "local_storage.json", settings.cache_quota_bytes)
        )
        self.http = http or httpx.AsyncClient(base_url=settings.api_base_url)
        self._sleep = sleep
        self.online = True

    async def aclose(self) -> None:
        await self.http.aclose()

    # ---------- Transport ----------
    def _headers(self) -> dict[str, str]:
        if self.session is None:
            return {}
        return {"Authorization": f"Bearer {self.session.access_token}"}

    async def _request(self, method: str, path: str, *, json: dict | None, timeout: float) -> Any:
        try:
            response = await asyncio.wait_for(
                self.http.request(method, path, json=json, headers=self._headers(), timeout=timeout),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise RequestTimeout(f"{method} {path} timed out after {timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = {"message": response.text}
            if not isinstance(payload, dict):
                payload = {"message": str(payload)}
            message = payload.get("message") or payload.get("detail") or f"HTTP {response.status_code}"
            error_cls = ServerError if response.status_code in RETRYABLE_STATUS else ApiError
            raise error_cls(response.status_code, str(message), payload)
        return response.json()

    async def _call(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        timeout: float | None = None,
        retry: bool = True,
        retry_status: set[int] = RETRYABLE_STATUS,
    ) -> Any:
        attempts = self.policy.max_retries + 1 if retry else 1
        attempt = 0
        while True:
            attempt_timeout = timeout if timeout is not None else self.policy.timeout_for(attempt)
            try:
                result = await self._request(method, path, json=json, timeout=attempt_timeout)
            except ClientError as exc:
                retryable = isinstance(exc, (RequestTimeout, TransportError)) or (
                    isinstance(exc, ApiError) and exc.status_code in retry_status
                )
                if not retryable:
                    raise
                if attempt + 1 >= attempts:
                    self.online = False
                    raise
                delay = self.policy.backoff_for(attempt)
                logger.info("%s; retrying in %.1fs (%d/%d)", exc, delay, attempt + 1, attempts)
                await self._sleep(delay)
                attempt += 1
                continue
            self.online = True
            return result

    # ---------- Profile ----------
    async def load_profile(self) -> dict | None:
        """Fetch the signed-in user's profile.

        Returns None when the server has no profile yet (onboarding). When
        every attempt fails the client goes offline with a minimal profile
        built from the auth session.
        """
        if self.session is None:
            return None
        try:
            profile = await self._call("GET", f"/user/{self.session.user_id}", retry_status=PROFILE_RETRY_STATUS)
        except ApiError as exc:
            if exc.status_code == 404:
                return None
            if exc.status_code >= 500:
                return self._offline_profile(exc)
            raise
        except (RequestTimeout, TransportError) as exc:
            return self._offline_profile(exc)
        self.cache.save_profile(profile)
        return profile

    def _offline_profile(self, exc: Exception) -> dict:
        logger.warning("Profile load failed after %d attempts (%s); running offline", self.policy.max_retries + 1, exc)
        self.online = False
        return fallback_user(self.session)

    # ---------- Classes ----------
    async def fetch_classes(self) -> list[dict]:
        classes = await self._call("GET", "/classes", timeout=self.settings.classes_timeout, retry=False)
        if not isinstance(classes, list):
            raise ApiError(200, f"Expected a list of classes, got {type(classes).__name__}")
        return classes

    async def reconcile_classes(self) -> list[dict]:
        local = self.cache.load_classes()
        try:
            remote = await self.fetch_classes()
        except ClientError as exc:
            logger.warning("Could not load classes from server (%s); using %d cached", exc, len(local))
            return local
        merged = merge_entities(local, remote)
        saved = self.cache.save_classes(merged)
        logger.info("Merged classes: %d local, %d server, %d total", len(local), len(remote), len(merged))
        return saved if saved is not None else merged

    async def create_class(self, class_data: dict) -> dict:
        if self.session is None:
            raise ClientError("Sign in to create a class")
        local = {
            **class_data,
            "id": class_data.get("id") or f"class:{uuid4().hex}",
            "instructorId": self.session.user_id,
            "instructorName": self.session.name,
            "createdAt": class_data.get("createdAt") or utc_now_iso(),
        }
        self.cache.upsert_class(local)
        try:
            saved = await self._call("POST", "/class", json=local)
        except ClientError as exc:
            logger.warning("Class %s kept locally, server save failed: %s", local["id"], exc)
            return local
        self.cache.upsert_class(saved)
        return saved

    async def sync_local_classes(self) -> int:
        """Push this user's local-only classes to the server."""
        if self.session is None:
            return 0
        remote_ids = {c["id"] for c in await self.fetch_classes()}
        pending = [
            c for c in self.cache.load_classes()
            if c["id"] not in remote_ids and c.get("instructorId") == self.session.user_id
        ]
        synced = 0
        for cls in pending:
            try:
                saved = await self._call("POST", "/class", json=cls)
            except ClientError as exc:
                logger.warning("Could not sync class %s: %s", cls["id"], exc)
                continue
            self.cache.upsert_class(saved)
            synced += 1
        logger.info("Sync complete: %d/%d classes synced", synced, len(pending))
        return synced

    async def delete_class(self, class_id: str) -> dict:
        result = await self._call("DELETE", f"/class/{class_id}")
        self.cache.remove_class(class_id)
        return result

    async def class_exists(self, class_id: str) -> bool | None:
        """True/False from the server, None when it could not be asked."""
        try:
            classes = await self.fetch_classes()
        except ClientError as exc:
            logger.warning("Could not verify class %s on server: %s", class_id, exc)
            return None
        return any(c.get("id") == class_id for c in classes)

    async def get_available_spots(self, class_id: str) -> dict:
        return await self._call("GET", f"/class/{class_id}/available-spots")

    # ---------- Bookings ----------
    async def create_booking(
        self,
        class_id: str,
        student_names: list[str],
        *,
        amounts: dict | None = None,
        request_id: str | None = None,
    ) -> dict:
        """Request seats. Retries reuse one request id so the server returns
        the original booking instead of creating (and charging) a second one."""
        body = {
            "classId": class_id,
            "studentCount": len(student_names),
            "studentNames": [n.strip() for n in student_names],
            "requestId": request_id or uuid4().hex,
            **(amounts or {}),
        }
        try:
            result = await self._call("POST", "/booking", json=body)
        except ApiError as exc:
            failed = exc.payload.get("booking")
            if isinstance(failed, dict):
                self.cache.upsert_booking(failed)
            raise
        self.cache.upsert_booking(result["booking"])
        return result

    async def respond_to_booking(self, booking_id: str, action: str, message: str | None = None) -> dict:
        body: dict[str, Any] = {"action": action}
        if message:
            body["message"] = message
        result = await self._call("POST", f"/booking/{booking_id}/respond", json=body)
        self.cache.upsert_booking(result["booking"])
        return result

    async def reconcile_bookings(self) -> list[dict]:
        local = self.cache.load_bookings()
        if self.session is None:
            return local
        try:
            remote = await self._call("GET", f"/bookings/{self.session.user_id}")
        except ClientError as exc:
            logger.warning("Could not load bookings from server (%s); using cache", exc)
            return local
        merged = merge_entities(local, remote)
        saved = self.cache.save_bookings(merged)
        return saved if saved is not None else merged
