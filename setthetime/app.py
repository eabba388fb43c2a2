"""FastAPI application: HTTP endpoints for availability and booking.

Endpoints:

  GET  /health                       Health check (JSON)
  GET  /                             Plain-text liveness
  GET  /availability                 Free slots for a meeting type
  POST /book                         Book one slot
  POST /meeting-types                Register a meeting type        (admin)
  GET  /meeting-types                List an owner's meeting types  (admin)
  GET  /meeting-types/{id}           Read one meeting type
  POST /bookings/{id}/cancel         Cancel a booking               (admin)
  GET  /oauth/google/start           Redirect to Google consent     (admin)
  GET  /oauth/google/callback        Store tokens for a signed state
  GET  /oauth/google/status          Is an owner connected?
  GET  /send-test                    Queue/send a test email        (admin)
  GET  /debug/outbox                 Last 20 outbox rows            (admin)
  POST /debug/flush/{id}             Send one queued email          (admin)

Collaborators (calendar provider, store, notifier) live on ``app.state``.
``create_app`` accepts them directly; otherwise they are built from
settings when the app starts.
"""

from __future__ import annotations

# Load .env into os.environ early so every settings reader sees it
from dotenv import load_dotenv
load_dotenv()

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

# Configure root logger early so all app loggers have a handler and are
# visible when run via `uvicorn setthetime.app:app`.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-20s %(levelname)-7s %(message)s",
)

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse

from setthetime.auth import require_admin_token
from setthetime.calendar_providers.base import CalendarProvider
from setthetime.config import Settings, settings
from setthetime.errors import INVALID_INPUT, BookingError, InvalidInput, NotFound
from setthetime.models import (
    AvailabilityResponse,
    BookingRequest,
    BookingResponse,
    MeetingTypeCreate,
    MeetingTypeOut,
    SlotOut,
)
from setthetime.notifications.base import Notifier
from setthetime.oauth import (
    build_authorization_url,
    exchange_code,
    sign_state,
    verify_state,
)
from setthetime.resolver import BookingResolver
from setthetime.store.base import BookingStore

log = logging.getLogger("setthetime.app")

_START_TIME = time.time()


def build_collaborators(config: Settings) -> tuple[CalendarProvider, BookingStore, Notifier]:
    """Wire the production calendar provider, SQL store and email outbox."""
    from setthetime.calendar_providers.google import GoogleCalendarProvider
    from setthetime.db import init_db, make_engine, make_session_factory
    from setthetime.notifications.outbox import EmailOutboxNotifier
    from setthetime.store.sql import SqlBookingStore

    engine = make_engine(config)
    init_db(engine)
    session_factory = make_session_factory(engine)

    calendar = GoogleCalendarProvider(
        client_id=config.google_client_id,
        client_secret=config.google_client_secret,
        service_account_path=config.google_service_account_json,
        send_updates=config.google_send_updates,
    )
    store = SqlBookingStore(session_factory)
    notifier = EmailOutboxNotifier(
        session_factory,
        postmark_token=config.postmark_token,
        mail_mode=config.mail_mode,
    )
    return calendar, store, notifier


def _install(app: FastAPI, config: Settings, calendar, store, notifier, clock=None) -> None:
    app.state.calendar = calendar
    app.state.store = store
    app.state.notifier = notifier
    app.state.resolver = BookingResolver(
        calendar,
        store,
        notifier,
        mail_from=config.mail_from,
        default_calendar_id=config.google_calendar_id,
        max_window_days=config.max_window_days,
        clock=clock,
    )


def create_app(
    config: Settings = settings,
    calendar: Optional[CalendarProvider] = None,
    store: Optional[BookingStore] = None,
    notifier: Optional[Notifier] = None,
    clock=None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    injected = calendar is not None and store is not None and notifier is not None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not injected:
            for warning in config.validate_startup():
                log.warning(warning)
            _install(app, config, *build_collaborators(config), clock=clock)
            log.info("Collaborators ready (mail mode: %s)", config.mail_mode)
        yield

    app = FastAPI(
        title="setthetime",
        description="Meeting-type availability and booking API",
        version="0.1.0",
        lifespan=lifespan,
    )
    if injected:
        _install(app, config, calendar, store, notifier, clock=clock)

    # ── Error mapping ──────────────────────────────────────────

    @app.exception_handler(BookingError)
    async def booking_error(_request: Request, exc: BookingError) -> JSONResponse:
        return JSONResponse(
            {"ok": False, "error": exc.kind, "detail": exc.detail},
            status_code=exc.status_code,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = [
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}"
            for err in exc.errors()
        ]
        return JSONResponse(
            {"ok": False, "error": INVALID_INPUT, "detail": "; ".join(problems)},
            status_code=422,
        )

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        """Lightweight health check; confirms the event loop is responsive."""
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({"status": "ok", "uptime": uptime})

    @app.get("/", response_class=PlainTextResponse)
    async def root() -> str:
        return "OK"

    # ── Availability & booking ─────────────────────────────────

    @app.get("/availability", response_model=AvailabilityResponse)
    async def availability(
        request: Request,
        meeting_type_id: int = Query(alias="meetingTypeId"),
        window_start: datetime = Query(alias="from"),
        window_end: datetime = Query(alias="to"),
    ) -> AvailabilityResponse:
        result = await request.app.state.resolver.get_availability(
            meeting_type_id, window_start, window_end
        )
        return AvailabilityResponse(
            slots=[SlotOut(start=s.start, end=s.end) for s in result.slots],
            duration_minutes=result.duration_minutes,
        )

    @app.post("/book", response_model=BookingResponse)
    async def book(body: BookingRequest, request: Request) -> BookingResponse:
        result = await request.app.state.resolver.book(
            body.meeting_type_id,
            body.recipient_name,
            body.recipient_email,
            body.start_time,
        )
        return BookingResponse(
            booking_id=result.booking.id,
            event_id=result.event_id,
            start=result.booking.start,
            end=result.booking.end,
            calendar_link=result.html_link,
        )

    @app.post(
        "/bookings/{booking_id}/cancel",
        dependencies=[Depends(require_admin_token)],
    )
    async def cancel_booking(booking_id: int, request: Request) -> dict:
        booking = await request.app.state.resolver.cancel(booking_id)
        return {"ok": True, "bookingId": booking.id, "status": booking.status}

    # ── Meeting types ──────────────────────────────────────────

    @app.post(
        "/meeting-types",
        response_model=MeetingTypeOut,
        status_code=201,
        dependencies=[Depends(require_admin_token)],
    )
    async def create_meeting_type(body: MeetingTypeCreate, request: Request) -> MeetingTypeOut:
        mt = await request.app.state.store.create_meeting_type(
            body.owner_id,
            body.title,
            body.duration_minutes,
            body.timezone,
            owner_email=body.owner_email,
        )
        return MeetingTypeOut(
            id=mt.id,
            owner_id=mt.owner_id,
            title=mt.title,
            duration_minutes=mt.duration_minutes,
            timezone=mt.timezone,
        )

    @app.get(
        "/meeting-types",
        response_model=list[MeetingTypeOut],
        dependencies=[Depends(require_admin_token)],
    )
    async def list_meeting_types(
        request: Request, owner_id: str = Query(alias="ownerId")
    ) -> list[MeetingTypeOut]:
        types = await request.app.state.store.list_meeting_types(owner_id)
        return [
            MeetingTypeOut(
                id=mt.id,
                owner_id=mt.owner_id,
                title=mt.title,
                duration_minutes=mt.duration_minutes,
                timezone=mt.timezone,
            )
            for mt in types
        ]

    @app.get("/meeting-types/{meeting_type_id}", response_model=MeetingTypeOut)
    async def get_meeting_type(meeting_type_id: int, request: Request) -> MeetingTypeOut:
        mt = await request.app.state.store.get_meeting_type(meeting_type_id)
        if mt is None:
            raise NotFound(f"Meeting type {meeting_type_id} not found")
        return MeetingTypeOut(
            id=mt.id,
            owner_id=mt.owner_id,
            title=mt.title,
            duration_minutes=mt.duration_minutes,
            timezone=mt.timezone,
        )

    # ── Google OAuth ───────────────────────────────────────────

    def _owner(owner: str) -> str:
        owner = owner or config.default_owner_id
        if not owner:
            raise InvalidInput("No owner given and DEFAULT_OWNER_ID is not set")
        return owner

    # The callback trusts only owners named in a state we signed
    state_secret = config.oauth_state_secret or config.admin_api_key

    @app.get("/oauth/google/start", dependencies=[Depends(require_admin_token)])
    async def oauth_start(owner: str = "") -> RedirectResponse:
        state = sign_state(_owner(owner), state_secret)
        url = build_authorization_url(
            config.google_client_id, config.google_redirect_uri, state=state
        )
        return RedirectResponse(url)

    @app.get("/oauth/google/callback", response_class=PlainTextResponse)
    async def oauth_callback(request: Request, code: str = "", state: str = "") -> str:
        if not code:
            raise InvalidInput("Missing code")
        owner_id = verify_state(state, state_secret)
        tokens = await exchange_code(
            code,
            config.google_client_id,
            config.google_client_secret,
            config.google_redirect_uri,
        )
        await request.app.state.store.save_oauth_tokens(owner_id, "google", tokens)
        log.info("Google connected for owner %s", owner_id)
        return "Google connected"

    @app.get("/oauth/google/status")
    async def oauth_status(request: Request, owner: str = "") -> dict:
        status = await request.app.state.store.get_oauth_status(_owner(owner), "google")
        if status is None:
            return {"connected": False}
        return {
            "connected": True,
            "expiry": status["expiry"],
            "updated_at": status["updated_at"],
        }

    # ── Email outbox ───────────────────────────────────────────

    @app.get("/send-test", dependencies=[Depends(require_admin_token)])
    async def send_test(request: Request, to: str = "") -> dict:
        if not to:
            raise InvalidInput("missing ?to=")
        result = await request.app.state.notifier.send(
            to=to,
            from_=config.mail_from,
            subject="Setthetime test",
            text="This is a test from the setthetime API.",
            payload={"kind": "test"},
        )
        return {"ok": True, **result}

    @app.get("/debug/outbox", dependencies=[Depends(require_admin_token)])
    async def debug_outbox(request: Request) -> list[dict]:
        return await request.app.state.notifier.list_recent(20)

    @app.post("/debug/flush/{outbox_id}", dependencies=[Depends(require_admin_token)])
    async def debug_flush(outbox_id: int, request: Request) -> dict:
        message_id = await request.app.state.notifier.flush(outbox_id)
        return {"ok": True, "messageID": message_id}

    return app


# ── Module-level app instance for uvicorn ──────────────────────

app = create_app()


def main() -> None:
    import uvicorn

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-12s %(levelname)-8s %(message)s"
    )

    uvicorn.run(
        "setthetime.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=log_config,
    )


if __name__ == "__main__":
    main()
