from datetime import datetime

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str
    version: str
    environment: str
    conference_store: str
    google_configured: bool
    webhook_configured: bool
    timeout_sweeper_enabled: bool
    timestamp: datetime


class ReadinessResponse(BaseModel):
    status: str = "ready"
    conference_store: str
    tracked_conferences: int
    timestamp: datetime
