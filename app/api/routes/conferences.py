import hmac
import logging

from fastapi import APIRouter, HTTPException, Request, status

from app.core.config import get_settings
from app.schemas.conference import (
    ConferenceTracking,
    DispatchResult,
    StatusCountsResponse,
    StatusSnapshot,
    SweepReport,
)
from app.services.conference_service import ConferenceService

router = APIRouter(prefix="/conferences", tags=["conferences"])
logger = logging.getLogger(__name__)


@router.get("/status", response_model=StatusSnapshot)
def get_status_snapshot() -> StatusSnapshot:
    settings = get_settings()
    service = ConferenceService(settings)
    return service.get_status_snapshot()


@router.get("/by-status", response_model=StatusCountsResponse)
def get_status_counts() -> StatusCountsResponse:
    settings = get_settings()
    service = ConferenceService(settings)
    return service.get_status_counts()


@router.post("/sweep", response_model=SweepReport)
def run_timeout_sweep(request: Request) -> SweepReport:
    _require_cron_secret(request)
    settings = get_settings()
    service = ConferenceService(settings)
    report = service.sweep_once()
    logger.info(
        "Timeout sweep requested path=%s candidates=%s processed=%s overlapped=%s",
        str(request.url.path),
        report.candidates,
        report.processed,
        report.overlapped,
    )
    return report


@router.post("/dispatch/{conference_id:path}", response_model=DispatchResult)
def dispatch_conference(conference_id: str, request: Request) -> DispatchResult:
    _require_cron_secret(request)
    settings = get_settings()
    service = ConferenceService(settings)
    result = service.trigger_manual(conference_id)
    logger.info(
        "Manual dispatch finished conference_id=%s outcome=%s status=%s",
        result.conference_id,
        result.outcome.value,
        result.status.value if result.status else None,
    )
    return result


@router.get("/{conference_id:path}", response_model=ConferenceTracking)
def get_conference(conference_id: str) -> ConferenceTracking:
    settings = get_settings()
    service = ConferenceService(settings)
    return service.get_conference(conference_id)


def _require_cron_secret(request: Request) -> None:
    expected_secret = get_settings().cron_secret.strip()
    if not expected_secret:
        return

    authorization = request.headers.get("authorization") or ""
    auth_scheme, _, auth_token = authorization.partition(" ")
    if auth_scheme.lower() != "bearer" or not hmac.compare_digest(auth_token.strip(), expected_secret):
        logger.warning("Operator request rejected path=%s reason=invalid_secret", str(request.url.path))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
