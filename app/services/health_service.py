import logging

from fastapi import HTTPException, status

from app.core.clock import Clock, utc_now
from app.core.config import Settings
from app.schemas.health import HealthResponse, ReadinessResponse
from app.services.conference_tracking_store import (
    ConferenceTrackingStore,
    create_conference_tracking_store,
)

logger = logging.getLogger(__name__)


class HealthService:
    def __init__(
        self,
        settings: Settings,
        store: ConferenceTrackingStore | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.settings = settings
        self._store = store
        self._clock = clock

    def get_status(self) -> HealthResponse:
        # Configuration only; storage and Google are not contacted.
        return HealthResponse(
            status="ok",
            service=self.settings.app_name,
            version=self.settings.app_version,
            environment=self.settings.app_env,
            conference_store=self.settings.conference_store,
            google_configured=self.settings.is_google_configured,
            webhook_configured=bool(self.settings.webhook_destination_url.strip()),
            timeout_sweeper_enabled=self.settings.timeout_sweeper_enabled,
            timestamp=self._clock(),
        )

    def get_readiness(self) -> ReadinessResponse:
        try:
            store = self._store or create_conference_tracking_store(
                store_name=self.settings.conference_store,
                mongodb_uri=self.settings.mongodb_uri,
                mongodb_db_name=self.settings.mongodb_db_name,
                mongodb_collection_name=self.settings.mongodb_conference_tracking_collection,
                mongodb_connect_timeout_ms=self.settings.mongodb_connect_timeout_ms,
            )
            tracked_conferences = store.count()
        except Exception as exc:
            logger.warning("Readiness check failed conference_store=%s error=%s", self.settings.conference_store, exc)
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Conference storage is unavailable.",
            ) from exc

        return ReadinessResponse(
            conference_store=self.settings.conference_store,
            tracked_conferences=tracked_conferences,
            timestamp=self._clock(),
        )
