import json
import re
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from functools import lru_cache
from typing import Any
from urllib import error, parse, request

from app.schemas.conference import ArtifactKind, ConferenceMetadata
from app.services.artifact_event_decoder import parse_event_time

MEET_SCOPES = ("https://www.googleapis.com/auth/meetings.space.readonly",)
DIRECTORY_SCOPES = ("https://www.googleapis.com/auth/admin.directory.user.readonly",)

_USER_ID_PATTERN = re.compile(r"(\d+)")

AccessTokenProvider = Callable[[str | None, tuple[str, ...]], str]


class GoogleWorkspaceError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ArtifactProvider(ABC):
    @abstractmethod
    def get_conference_metadata(self, conference_id: str, as_email: str | None) -> ConferenceMetadata:
        raise NotImplementedError

    @abstractmethod
    def get_artifact_link(self, kind: ArtifactKind, ref: str, as_email: str | None) -> str | None:
        raise NotImplementedError


class DirectoryLookup(ABC):
    @abstractmethod
    def resolve_user_email(self, actor_ref: str) -> str | None:
        raise NotImplementedError


class GoogleWorkspaceClient(ArtifactProvider, DirectoryLookup):
    """Meet v2 and Admin Directory v1 REST calls made as a delegated service account."""

    def __init__(
        self,
        *,
        service_account_info: Mapping[str, Any] | None = None,
        service_account_file: str = "",
        impersonated_user_email: str = "",
        meet_api_url: str = "https://meet.googleapis.com/v2",
        directory_api_url: str = "https://admin.googleapis.com/admin/directory/v1",
        timeout_seconds: float = 10.0,
        access_token_provider: AccessTokenProvider | None = None,
    ) -> None:
        self.service_account_info = dict(service_account_info) if service_account_info else None
        self.service_account_file = service_account_file
        self.impersonated_user_email = impersonated_user_email
        self.meet_api_url = meet_api_url.rstrip("/")
        self.directory_api_url = directory_api_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._access_token_provider = access_token_provider
        self._credentials: dict[tuple[str | None, tuple[str, ...]], Any] = {}
        self._credentials_lock = threading.Lock()

    def get_conference_metadata(self, conference_id: str, as_email: str | None) -> ConferenceMetadata:
        response_payload = self._request_json(
            f"{self.meet_api_url}/{_quote_resource(conference_id)}",
            subject=as_email or self.impersonated_user_email or None,
            scopes=MEET_SCOPES,
        )
        title: str | None = None
        space = response_payload.get("space")
        if isinstance(space, Mapping):
            display_name = space.get("displayName")
            if isinstance(display_name, str) and display_name.strip():
                title = display_name.strip()
        return ConferenceMetadata(
            title=title,
            start_time=parse_event_time(response_payload.get("startTime")),
            end_time=parse_event_time(response_payload.get("endTime")),
        )

    def get_artifact_link(self, kind: ArtifactKind, ref: str, as_email: str | None) -> str | None:
        if kind == ArtifactKind.none:
            return None
        response_payload = self._request_json(
            f"{self.meet_api_url}/{_quote_resource(ref)}",
            subject=as_email or self.impersonated_user_email or None,
            scopes=MEET_SCOPES,
        )
        for destination_key in ("driveDestination", "docsDestination"):
            destination = response_payload.get(destination_key)
            if not isinstance(destination, Mapping):
                continue
            export_uri = destination.get("exportUri")
            if isinstance(export_uri, str) and export_uri.strip():
                return export_uri.strip()
        return None

    def resolve_user_email(self, actor_ref: str) -> str | None:
        user_id_match = _USER_ID_PATTERN.search(actor_ref or "")
        if not user_id_match:
            return None

        try:
            response_payload = self._request_json(
                f"{self.directory_api_url}/users/{user_id_match.group(1)}",
                subject=self.impersonated_user_email or None,
                scopes=DIRECTORY_SCOPES,
            )
        except GoogleWorkspaceError as exc:
            if exc.status_code == 404:
                return None
            raise

        primary_email = response_payload.get("primaryEmail")
        if not isinstance(primary_email, str) or not primary_email.strip():
            return None
        return primary_email.strip().lower()

    def _request_json(
        self,
        target: str,
        *,
        subject: str | None,
        scopes: tuple[str, ...],
    ) -> dict[str, Any]:
        req = request.Request(
            target,
            method="GET",
            headers={
                "Authorization": f"Bearer {self._get_access_token(subject, scopes)}",
                "Accept": "application/json",
            },
        )

        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_body = response.read()
        except TimeoutError as exc:
            raise GoogleWorkspaceError("Google API request timed out.") from exc
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            raise GoogleWorkspaceError(
                f"Google API HTTP {exc.code}: {body or 'empty response body'}",
                status_code=exc.code,
            ) from exc
        except error.URLError as exc:
            raise GoogleWorkspaceError(f"Google API connection error: {exc.reason}") from exc

        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise GoogleWorkspaceError("Google API returned invalid JSON.") from exc

        if not isinstance(parsed_body, dict):
            raise GoogleWorkspaceError("Google API response is not a JSON object.")
        return parsed_body

    def _get_access_token(self, subject: str | None, scopes: tuple[str, ...]) -> str:
        if self._access_token_provider is not None:
            return self._access_token_provider(subject, scopes)

        from google.auth.exceptions import GoogleAuthError
        from google.auth.transport.requests import Request as GoogleAuthRequest

        cache_key = (subject, scopes)
        with self._credentials_lock:
            credentials = self._credentials.get(cache_key)
            if credentials is None:
                credentials = self._build_credentials(subject, scopes)
                self._credentials[cache_key] = credentials

        if not credentials.valid:
            try:
                credentials.refresh(GoogleAuthRequest())
            except GoogleAuthError as exc:
                raise GoogleWorkspaceError(f"Google service account token refresh failed: {exc}") from exc
        return str(credentials.token)

    def _build_credentials(self, subject: str | None, scopes: tuple[str, ...]) -> Any:
        from google.auth.exceptions import GoogleAuthError
        from google.oauth2 import service_account

        try:
            if self.service_account_info:
                credentials = service_account.Credentials.from_service_account_info(
                    self.service_account_info,
                    scopes=list(scopes),
                )
            elif self.service_account_file:
                credentials = service_account.Credentials.from_service_account_file(
                    self.service_account_file,
                    scopes=list(scopes),
                )
            else:
                raise GoogleWorkspaceError("Google service account credentials are not configured.")
        except (OSError, ValueError, KeyError, GoogleAuthError) as exc:
            raise GoogleWorkspaceError(f"Google service account credentials could not be loaded: {exc}") from exc

        if subject:
            credentials = credentials.with_subject(subject)
        return credentials


def _quote_resource(resource_name: str) -> str:
    return parse.quote(resource_name.strip().strip("/"), safe="/")


def create_google_workspace_client(
    *,
    service_account_file: str,
    service_account_json: str,
    impersonated_user_email: str,
    meet_api_url: str,
    directory_api_url: str,
    timeout_seconds: float,
) -> GoogleWorkspaceClient | None:
    if not service_account_file.strip() and not service_account_json.strip():
        return None
    return _create_google_workspace_client_cached(
        service_account_file=service_account_file.strip(),
        service_account_json=service_account_json.strip(),
        impersonated_user_email=impersonated_user_email.strip(),
        meet_api_url=meet_api_url,
        directory_api_url=directory_api_url,
        timeout_seconds=timeout_seconds,
    )


@lru_cache
def _create_google_workspace_client_cached(
    *,
    service_account_file: str,
    service_account_json: str,
    impersonated_user_email: str,
    meet_api_url: str,
    directory_api_url: str,
    timeout_seconds: float,
) -> GoogleWorkspaceClient:
    service_account_info: dict[str, Any] | None = None
    if service_account_json:
        try:
            service_account_info = json.loads(service_account_json)
        except json.JSONDecodeError as exc:
            raise GoogleWorkspaceError("GOOGLE_SERVICE_ACCOUNT_JSON is not valid JSON.") from exc

    return GoogleWorkspaceClient(
        service_account_info=service_account_info,
        service_account_file=service_account_file,
        impersonated_user_email=impersonated_user_email,
        meet_api_url=meet_api_url,
        directory_api_url=directory_api_url,
        timeout_seconds=timeout_seconds,
    )


def clear_google_workspace_client_cache() -> None:
    _create_google_workspace_client_cached.cache_clear()
