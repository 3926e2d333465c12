"""Google Calendar integration via Service Account.

The service account impersonates each agent's calendar identity (domain-wide
delegation), so every token is scoped to one subject.
"""

import json
import logging
import time
from datetime import datetime

import httpx
import jwt

from consultbook.config import settings
from consultbook.errors import ExternalServiceError
from consultbook.services.http import external_call
from consultbook.services.intervals import BusyInterval
from consultbook.services.timewindow import format_for_calendar_api, to_business_time

logger = logging.getLogger(__name__)

_SCOPES = "https://www.googleapis.com/auth/calendar"
_TOKEN_URI = "https://oauth2.googleapis.com/token"
_CALENDAR_API = "https://www.googleapis.com/calendar/v3"

SERVICE = "calendar"


class GoogleCalendarClient:
    """Busy-time queries and event create/delete against the Google Calendar API."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        service_account: dict | None = None,
    ):
        self._client = client
        self._service_account = service_account
        self._tokens: dict[str, tuple[str, float]] = {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.external_timeout_seconds)
        return self._client

    def _load_service_account(self) -> dict:
        """Load service account credentials from JSON file."""
        if self._service_account is None:
            path = settings.google_service_account_file
            if not path:
                raise ExternalServiceError(
                    SERVICE, "authenticate", "GOOGLE_SERVICE_ACCOUNT_FILE not configured", 401
                )
            with open(path) as f:
                self._service_account = json.load(f)
        return self._service_account

    async def _get_access_token(self, subject: str) -> str:
        """Get a valid access token for ``subject``, refreshing if needed (cached for 50 min)."""
        cached = self._tokens.get(subject)
        if cached and time.time() < cached[1]:
            return cached[0]

        creds = self._load_service_account()
        now = int(time.time())

        payload = {
            "iss": creds["client_email"],
            "sub": subject,
            "scope": _SCOPES,
            "aud": _TOKEN_URI,
            "iat": now,
            "exp": now + 3600,
        }

        signed_jwt = jwt.encode(payload, creds["private_key"], algorithm="RS256")

        resp = await self._get_client().post(
            _TOKEN_URI,
            data={
                "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                "assertion": signed_jwt,
            },
        )
        resp.raise_for_status()
        token = resp.json()["access_token"]

        self._tokens[subject] = (token, time.time() + 3000)  # cache ~50 min
        return token

    async def _headers(self, subject: str) -> dict[str, str]:
        token = await self._get_access_token(subject)
        return {"Authorization": f"Bearer {token}"}

    async def query_busy(
        self, calendar_id: str, start: datetime, end: datetime
    ) -> list[BusyInterval]:
        """Busy intervals intersecting ``[start, end]`` on the agent's primary calendar."""
        async with external_call(SERVICE, "freebusy"):
            resp = await self._get_client().post(
                f"{_CALENDAR_API}/freeBusy",
                json={
                    "timeMin": format_for_calendar_api(start),
                    "timeMax": format_for_calendar_api(end),
                    "timeZone": settings.business_timezone,
                    "items": [{"id": calendar_id}],
                },
                headers=await self._headers(calendar_id),
            )
            resp.raise_for_status()
            data = resp.json()

        calendar = data.get("calendars", {}).get(calendar_id)
        if calendar is None:
            raise ExternalServiceError(SERVICE, "freebusy", f"no data for {calendar_id}", 404)
        if calendar.get("errors"):
            reasons = ", ".join(e.get("reason", "unknown") for e in calendar["errors"])
            raise ExternalServiceError(SERVICE, "freebusy", reasons)

        busy = [
            BusyInterval(to_business_time(item["start"]), to_business_time(item["end"]))
            for item in calendar.get("busy", [])
        ]
        logger.info(
            "Calendar %s busy between %s and %s: %d interval(s)",
            calendar_id, start.isoformat(), end.isoformat(), len(busy),
        )
        return busy

    async def create_event(
        self,
        calendar_id: str,
        summary: str,
        description: str,
        start: datetime,
        end: datetime,
    ) -> str:
        """Create an event and return its id."""
        event_body = {
            "summary": summary,
            "description": description,
            "start": {
                "dateTime": format_for_calendar_api(start),
                "timeZone": settings.business_timezone,
            },
            "end": {
                "dateTime": format_for_calendar_api(end),
                "timeZone": settings.business_timezone,
            },
            "reminders": {"useDefault": True},
        }

        async with external_call(SERVICE, "create_event"):
            resp = await self._get_client().post(
                f"{_CALENDAR_API}/calendars/{calendar_id}/events",
                json=event_body,
                headers=await self._headers(calendar_id),
            )
            resp.raise_for_status()
            data = resp.json()

        logger.info("Calendar event created for %s: %s", calendar_id, data.get("id"))
        return data["id"]

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        async with external_call(SERVICE, "delete_event"):
            resp = await self._get_client().delete(
                f"{_CALENDAR_API}/calendars/{calendar_id}/events/{event_id}",
                headers=await self._headers(calendar_id),
            )
            if resp.status_code in (404, 410):
                logger.info("Calendar event %s already gone", event_id)
                return
            resp.raise_for_status()

        logger.info("Calendar event deleted for %s: %s", calendar_id, event_id)
