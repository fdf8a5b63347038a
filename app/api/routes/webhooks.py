import hmac
import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from app.core.config import get_settings
from app.schemas.conference import GoogleEventWebhookResponse
from app.services.artifact_event_decoder import ArtifactEventDecodeError
from app.services.conference_service import ConferenceService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post(
    "/google-events",
    response_model=GoogleEventWebhookResponse,
)
async def receive_google_event(request: Request) -> GoogleEventWebhookResponse:
    settings = get_settings()
    expected_secret = settings.pubsub_webhook_secret.strip()
    if expected_secret:
        provided_secret = _extract_shared_secret(request) or ""
        if not hmac.compare_digest(provided_secret, expected_secret):
            logger.warning("Google event rejected path=%s reason=invalid_secret", str(request.url.path))
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid webhook secret.",
            )

    envelope = await _load_payload(request)
    service = ConferenceService(settings)
    try:
        response = await run_in_threadpool(service.ingest_event, envelope)
    except ArtifactEventDecodeError as exc:
        logger.warning("Google event rejected path=%s reason=%s", str(request.url.path), exc)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    logger.info(
        "Google event processed conference_id=%s event_type=%s artifact_kind=%s ingest_outcome=%s dispatch_outcome=%s",
        response.conference_id,
        response.event_type,
        response.artifact_kind.value if response.artifact_kind else None,
        response.ingest_outcome.value if response.ingest_outcome else None,
        response.dispatch_outcome.value if response.dispatch_outcome else None,
    )
    return response


def _extract_shared_secret(request: Request) -> str | None:
    # Pub/Sub push subscriptions can only carry the secret in the endpoint URL.
    query_token = request.query_params.get("token")
    if query_token:
        return query_token.strip()

    x_webhook_secret = request.headers.get("x-webhook-secret")
    if x_webhook_secret:
        return x_webhook_secret.strip()

    authorization = request.headers.get("authorization")
    if not authorization:
        return None

    auth_scheme, _, auth_token = authorization.partition(" ")
    if auth_scheme.lower() != "bearer":
        return None

    token = auth_token.strip()
    return token or None


async def _load_payload(request: Request) -> dict[str, Any]:
    raw_body = await request.body()
    try:
        parsed_payload = json.loads(raw_body or b"{}")
    except json.JSONDecodeError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Request body must be valid JSON.",
        ) from exc

    if not isinstance(parsed_payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Request body must be a JSON object.",
        )
    return parsed_payload
