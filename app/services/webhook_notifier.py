import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from urllib import error, request

from app.schemas.conference import DispatchPayload

logger = logging.getLogger(__name__)


class WebhookDeliveryError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


class Notifier(ABC):
    @abstractmethod
    def send(self, payload: DispatchPayload) -> None:
        raise NotImplementedError


class WebhookNotifier(Notifier):
    def __init__(
        self,
        destination_url: str,
        timeout_seconds: float = 15.0,
        max_attempts: int = 3,
        retry_backoff_seconds: float = 1.0,
        user_agent: str = "MeetArtifactsRelay/1.0",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.destination_url = destination_url.strip()
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(max_attempts, 1)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.user_agent = user_agent
        self._sleep = sleep

    def send(self, payload: DispatchPayload) -> None:
        if not self.destination_url:
            raise WebhookDeliveryError("WEBHOOK_DESTINATION_URL is not configured.")

        raw_payload = payload.model_dump_json().encode("utf-8")
        for attempt in range(1, self.max_attempts + 1):
            try:
                status_code = self._post(raw_payload)
            except WebhookDeliveryError as exc:
                if not exc.retryable or attempt == self.max_attempts:
                    raise
                delay = self.retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Webhook delivery attempt failed conference_id=%s attempt=%s retry_in=%.1fs error=%s",
                    payload.conference_id,
                    attempt,
                    delay,
                    exc,
                )
                self._sleep(delay)
                continue

            logger.info(
                "Webhook delivered conference_id=%s status_code=%s attempt=%s",
                payload.conference_id,
                status_code,
                attempt,
            )
            return

    def _post(self, raw_payload: bytes) -> int:
        req = request.Request(
            self.destination_url,
            data=raw_payload,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": self.user_agent,
            },
            method="POST",
        )

        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response.read()
                return int(getattr(response, "status", 200))
        except TimeoutError as exc:
            raise WebhookDeliveryError("Webhook destination timed out.") from exc
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            raise WebhookDeliveryError(
                f"Webhook destination HTTP {exc.code}: {body or 'empty response body'}",
                status_code=exc.code,
            ) from exc
        except error.URLError as exc:
            raise WebhookDeliveryError(f"Webhook destination connection error: {exc.reason}") from exc
