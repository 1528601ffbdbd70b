from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import List, Optional
import logging

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

# Local imports
from auth import Principal, SessionStore
from booking_service import BookingService, Outcome
from class_service import ClassService, UserService
from config import Settings, get_settings
from errors import AuthenticationRequired, HerdError
from kv_store import KVStore
from models import (
    AvailableSpots,
    Booking,
    BookingOut,
    BookRequest,
    ClassIn,
    DeleteClassResponse,
    RespondRequest,
    UserCreate,
    UserUpdate,
)
from notifications import (
    EmailRenderer,
    EmailSender,
    LoggingEmailSender,
    NotificationDispatcher,
    ResendEmailSender,
)
from settlement import PaymentProcessor, SettlementService, SimulatedProcessor
from utils import utc_now_iso

# ---------- Config ----------
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("herd.api")

bearer = HTTPBearer(auto_error=False)


@dataclass
class Services:
    store: KVStore
    sessions: SessionStore
    classes: ClassService
    users: UserService
    bookings: BookingService
    dispatcher: NotificationDispatcher


def build_services(
    settings: Settings,
    processor: Optional[PaymentProcessor] = None,
    sender: Optional[EmailSender] = None,
) -> Services:
    store = KVStore(settings.db_path)
    if sender is None:
        if settings.resend_api_key:
            sender = ResendEmailSender(settings.resend_api_key, settings.email_from, settings.email_redirect_to)
        else:
            sender = LoggingEmailSender()
    settlement = SettlementService(store, processor or SimulatedProcessor(settings.settlement_delay_seconds))
    return Services(
        store=store,
        sessions=SessionStore(store),
        classes=ClassService(store),
        users=UserService(store),
        bookings=BookingService(store, settlement, settings),
        dispatcher=NotificationDispatcher(
            EmailRenderer(settings.app_origin, settings.display_timezone), sender
        ),
    )


# ---------- Dependencies ----------
def get_services(request: Request) -> Services:
    return request.app.state.services


def current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    services: Services = Depends(get_services),
) -> Principal:
    if credentials is None:
        raise AuthenticationRequired("Authorization token required")
    principal = services.sessions.resolve(credentials.credentials)
    if principal is None:
        raise AuthenticationRequired("Invalid or expired token")
    return principal


def _respond(outcome: Outcome, services: Services, background: BackgroundTasks) -> BookingOut:
    # Emails go out after the response; their failure cannot touch the booking.
    if outcome.notifications:
        background.add_task(services.dispatcher.dispatch_all, outcome.notifications)
    return BookingOut(booking=Booking.model_validate(outcome.booking), message=outcome.message)


def create_app(
    settings: Optional[Settings] = None,
    processor: Optional[PaymentProcessor] = None,
    sender: Optional[EmailSender] = None,
) -> FastAPI:
    settings = settings or get_settings()

    # ---------- App Lifecycle ----------
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.services.store.init_db()
        logger.info("Key-value store ready at %s", settings.db_path)
        yield
        logger.info("Application shutting down.")

    app = FastAPI(title="HERD Booking API", lifespan=lifespan)
    app.state.services = build_services(settings, processor, sender)

    @app.exception_handler(HerdError)
    async def herd_error_handler(request: Request, exc: HerdError):
        if exc.http_status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.http_status, content=exc.detail())

    # ---------- Health ----------
    @app.get("/health")
    def health():
        return {"status": "healthy", "timestamp": utc_now_iso(), "service": "HERD Booking Server"}

    # ---------- Users ----------
    @app.post("/user")
    def create_user_api(
        body: UserCreate,
        principal: Principal = Depends(current_principal),
        services: Services = Depends(get_services),
    ):
        return services.users.create_user(principal, body)

    @app.get("/user/{user_id}")
    def get_user_api(user_id: str, services: Services = Depends(get_services)):
        return services.users.get_user(user_id)

    @app.put("/user/{user_id}")
    def update_user_api(
        user_id: str,
        body: UserUpdate,
        principal: Principal = Depends(current_principal),
        services: Services = Depends(get_services),
    ):
        return services.users.update_user(principal, user_id, body)

    # ---------- Classes ----------
    @app.post("/class")
    def create_class_api(
        body: ClassIn,
        principal: Principal = Depends(current_principal),
        services: Services = Depends(get_services),
    ):
        return services.classes.create_class(principal, body)

    @app.get("/classes")
    def list_classes_api(services: Services = Depends(get_services)):
        return services.classes.list_classes()

    @app.delete("/class/{class_id}", response_model=DeleteClassResponse)
    def delete_class_api(
        class_id: str,
        principal: Principal = Depends(current_principal),
        services: Services = Depends(get_services),
    ):
        return services.classes.delete_class(principal, class_id)

    @app.get("/class/{class_id}/bookings", response_model=List[Booking])
    def class_bookings_api(
        class_id: str,
        principal: Principal = Depends(current_principal),
        services: Services = Depends(get_services),
    ):
        return services.classes.list_class_bookings(principal, class_id)

    @app.get("/class/{class_id}/available-spots", response_model=AvailableSpots)
    def available_spots_api(class_id: str, services: Services = Depends(get_services)):
        return services.classes.available_spots(class_id)

    # ---------- Bookings ----------
    @app.post("/booking", response_model=BookingOut)
    def book_class_api(
        body: BookRequest,
        background: BackgroundTasks,
        principal: Principal = Depends(current_principal),
        services: Services = Depends(get_services),
    ):
        return _respond(services.bookings.create_booking(principal, body), services, background)

    @app.post("/booking/{booking_id}/respond", response_model=BookingOut)
    def respond_booking_api(
        booking_id: str,
        body: RespondRequest,
        background: BackgroundTasks,
        principal: Principal = Depends(current_principal),
        services: Services = Depends(get_services),
    ):
        outcome = services.bookings.respond_to_booking(principal, booking_id, body.action, body.message)
        return _respond(outcome, services, background)

    @app.get("/bookings/{user_id}", response_model=List[Booking])
    def user_bookings_api(
        user_id: str,
        principal: Principal = Depends(current_principal),
        services: Services = Depends(get_services),
    ):
        return services.bookings.list_user_bookings(principal, user_id)

    return app


app = create_app()


# ---------- Run ----------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
