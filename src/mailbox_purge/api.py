"""HTTP interface for starting scans and executing purges.

Scan start returns immediately with the scan id; progress is observed by
polling ``GET /api/scans/{id}`` or streaming ``GET /api/scans/{id}/events``.
The caller's identity comes from the ``X-Owner-Id`` header set by the
authentication layer in front of this service.
"""

from __future__ import annotations

import json
import queue
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from typing import Callable, Iterator

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from google.oauth2.credentials import Credentials
from pydantic import BaseModel, Field
from starlette.responses import StreamingResponse

from .auth import CredentialProvider, build_gmail_service
from .config import Settings, get_settings
from .exceptions import MailboxPurgeError, ScanNotFound, Unauthenticated
from .models import RetentionAction, ScanRecord, SenderAction
from .purger import execute_purge
from .scanner import ScanOrchestrator
from .store import ScanStore

logger = structlog.get_logger()

KEEPALIVE_SECONDS = 15.0


class ScanRequest(BaseModel):
    rescan: bool = False


class SenderActionIn(BaseModel):
    sender_email: str = Field(min_length=1)
    action: RetentionAction = RetentionAction.SKIP
    unsubscribe: bool = False


class PurgeRequest(BaseModel):
    scan_id: str = Field(min_length=1)
    senders: list[SenderActionIn]


@dataclass
class Services:
    settings: Settings
    store: ScanStore
    credentials: CredentialProvider
    orchestrator: ScanOrchestrator
    service_factory: Callable[[Credentials], object]


router = APIRouter(prefix="/api", tags=["mailbox"])


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_owner(x_owner_id: str | None = Header(default=None)) -> str:
    if not x_owner_id:
        raise Unauthenticated("Missing X-Owner-Id header")
    return x_owner_id


def _owned_scan(services: Services, scan_id: str, owner: str) -> ScanRecord:
    scan = services.store.get_scan(scan_id)
    if scan is None or scan.owner != owner:
        raise ScanNotFound(f"Scan {scan_id} not found")
    return scan


@router.post("/scan")
def start_scan(
    body: ScanRequest | None = None,
    owner: str = Depends(get_owner),
    services: Services = Depends(get_services),
) -> dict:
    rescan = body.rescan if body else False
    scan_id = services.orchestrator.start_scan(owner, rescan=rescan)
    return {"scan_id": scan_id}


@router.post("/purge")
def purge(
    body: PurgeRequest,
    owner: str = Depends(get_owner),
    services: Services = Depends(get_services),
) -> dict:
    creds = services.credentials.get_credentials(owner)
    gmail = services.service_factory(creds)
    actions = [
        SenderAction(
            sender_email=item.sender_email.strip().lower(),
            action=item.action,
            unsubscribe=item.unsubscribe,
        )
        for item in body.senders
    ]
    result = execute_purge(
        services.store,
        gmail,
        body.scan_id,
        actions,
        owner=owner,
        attempts=services.settings.gmail_retry_attempts,
        unsubscribe_timeout=services.settings.unsubscribe_timeout,
    )
    return result.to_dict()


@router.get("/scans")
def list_scans(owner: str = Depends(get_owner), services: Services = Depends(get_services)) -> list[dict]:
    return [scan.to_dict() for scan in services.store.list_scans(owner)]


@router.get("/scans/{scan_id}")
def get_scan(scan_id: str, owner: str = Depends(get_owner), services: Services = Depends(get_services)) -> dict:
    return _owned_scan(services, scan_id, owner).to_dict()


@router.get("/scans/{scan_id}/senders")
def list_senders(
    scan_id: str,
    min_unopened: float = Query(default=0.0, ge=0, le=100),
    owner: str = Depends(get_owner),
    services: Services = Depends(get_services),
) -> list[dict]:
    _owned_scan(services, scan_id, owner)
    return [asdict(s) for s in services.store.list_sender_summaries(scan_id, min_unopened=min_unopened)]


def _sse(record: ScanRecord) -> bytes:
    return f"event: scan\ndata: {json.dumps(record.to_dict())}\n\n".encode("utf-8")


@router.get("/scans/{scan_id}/events")
def scan_events(scan_id: str, owner: str = Depends(get_owner), services: Services = Depends(get_services)):
    _owned_scan(services, scan_id, owner)
    updates: queue.Queue[ScanRecord] = queue.Queue()
    # Subscribe before the snapshot so no update falls in between.
    unsubscribe = services.store.subscribe(scan_id, updates.put)

    def gen() -> Iterator[bytes]:
        try:
            current = services.store.get_scan(scan_id)
            if current is None:
                return
            yield _sse(current)
            while not current.status.is_terminal:
                try:
                    current = updates.get(timeout=KEEPALIVE_SECONDS)
                except queue.Empty:
                    yield b": keep-alive\n\n"
                    continue
                yield _sse(current)
        finally:
            unsubscribe()

    return StreamingResponse(gen(), media_type="text/event-stream")


async def _handle_app_error(request: Request, exc: MailboxPurgeError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=str(exc))
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "message": str(exc)})


async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "invalid_request", "message": "Invalid request", "details": _validation_details(exc)},
    )


async def _handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("request_crashed", path=request.url.path)
    return JSONResponse(status_code=500, content={"error": "internal", "message": "Internal server error"})


def _validation_details(exc: RequestValidationError) -> list[dict]:
    return [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]


def create_app(
    settings: Settings | None = None,
    store: ScanStore | None = None,
    credentials: CredentialProvider | None = None,
    service_factory: Callable[[Credentials], object] = build_gmail_service,
    orchestrator: ScanOrchestrator | None = None,
) -> FastAPI:
    """Build the FastAPI application and wire its collaborators."""
    settings = settings or get_settings()
    store = store or ScanStore(settings.db_path)
    credentials = credentials or CredentialProvider(settings.token_dir, settings.credentials_path)
    orchestrator = orchestrator or ScanOrchestrator(
        store, credentials, service_factory=service_factory, settings=settings
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        orchestrator.recover_interrupted()
        yield
        orchestrator.shutdown(wait=False)

    app = FastAPI(title="Mailbox Purge", lifespan=lifespan)
    app.state.services = Services(
        settings=settings,
        store=store,
        credentials=credentials,
        orchestrator=orchestrator,
        service_factory=service_factory,
    )
    app.include_router(router)
    app.add_exception_handler(MailboxPurgeError, _handle_app_error)
    app.add_exception_handler(RequestValidationError, _handle_validation_error)
    app.add_exception_handler(Exception, _handle_unexpected)
    return app
