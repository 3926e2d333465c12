"""Zoom meetings via Server-to-Server OAuth."""

import logging
import time
from dataclasses import dataclass
from datetime import datetime

import httpx

from consultbook.config import settings
from consultbook.errors import ExternalServiceError
from consultbook.services.http import external_call
from consultbook.services.timewindow import to_business_time

logger = logging.getLogger(__name__)

_TOKEN_URI = "https://zoom.us/oauth/token"
_ZOOM_API = "https://api.zoom.us/v2"

SERVICE = "conferencing"

# Stored in place of a join link when the meeting could not be created.
PLACEHOLDER_JOIN_URL = "https://zoom.us/j/placeholder"


@dataclass
class ConferencingMeeting:
    id: str
    join_url: str
    passcode: str | None = None


class ZoomClient:
    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client
        self._token: str | None = None
        self._token_expiry: float = 0

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.external_timeout_seconds)
        return self._client

    async def _get_access_token(self) -> str:
        """Account-credentials grant, cached until shortly before expiry."""
        if self._token and time.time() < self._token_expiry:
            return self._token

        if not (settings.zoom_account_id and settings.zoom_client_id):
            raise ExternalServiceError(SERVICE, "authenticate", "Zoom credentials not configured", 401)

        resp = await self._get_client().post(
            _TOKEN_URI,
            params={"grant_type": "account_credentials", "account_id": settings.zoom_account_id},
            auth=(settings.zoom_client_id, settings.zoom_client_secret),
        )
        resp.raise_for_status()
        data = resp.json()

        self._token = data["access_token"]
        self._token_expiry = time.time() + max(int(data.get("expires_in", 3600)) - 300, 60)
        return self._token

    async def _headers(self) -> dict[str, str]:
        token = await self._get_access_token()
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    async def create_meeting(
        self,
        host_id: str,
        topic: str,
        start: datetime,
        duration_minutes: int,
        agenda: str = "",
    ) -> ConferencingMeeting:
        """Schedule a meeting hosted by ``host_id`` (a Zoom user id or email)."""
        local_start = to_business_time(start)
        payload = {
            "topic": topic[:200],
            "type": 2,  # scheduled meeting
            # Local wall time plus an explicit zone, as Zoom expects.
            "start_time": local_start.strftime("%Y-%m-%dT%H:%M:%S"),
            "timezone": settings.business_timezone,
            "duration": duration_minutes,
            "agenda": agenda[:2000],
            "settings": {
                "host_video": True,
                "participant_video": True,
                "join_before_host": False,
                "waiting_room": True,
                "approval_type": 0,
            },
        }

        async with external_call(SERVICE, "create_meeting"):
            resp = await self._get_client().post(
                f"{_ZOOM_API}/users/{host_id}/meetings",
                json=payload,
                headers=await self._headers(),
            )
            resp.raise_for_status()
            data = resp.json()

        meeting = ConferencingMeeting(
            id=str(data["id"]),
            join_url=data["join_url"],
            passcode=data.get("password"),
        )
        logger.info("Zoom meeting created for %s: %s", host_id, meeting.id)
        return meeting

    async def delete_meeting(self, host_id: str, meeting_id: str) -> None:
        async with external_call(SERVICE, "delete_meeting"):
            resp = await self._get_client().delete(
                f"{_ZOOM_API}/meetings/{meeting_id}",
                headers=await self._headers(),
            )
            if resp.status_code == 404:
                logger.info("Zoom meeting %s already gone", meeting_id)
                return
            resp.raise_for_status()

        logger.info("Zoom meeting deleted for %s: %s", host_id, meeting_id)
