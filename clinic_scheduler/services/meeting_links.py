import logging
from datetime import datetime

import httpx

from clinic_scheduler.core import config
from clinic_scheduler.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class MeetingLinkIssuer:
    """Creates video-meeting links for online consultations."""

    def __init__(self, api_url: str | None = None, api_token: str | None = None, timeout: float | None = None):
        self.api_url = api_url if api_url is not None else config.MEETING_API_URL
        self.api_token = api_token if api_token is not None else config.MEETING_API_TOKEN
        self.timeout = timeout if timeout is not None else config.HTTP_TIMEOUT_SECONDS

    @property
    def enabled(self) -> bool:
        return bool(self.api_url)

    def create(self, title: str, start: datetime, end: datetime, attendees: list[str]) -> str | None:
        if not self.enabled:
            return None

        headers = {'Authorization': f'Bearer {self.api_token}'} if self.api_token else {}
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    self.api_url,
                    headers=headers,
                    json={
                        'summary': title,
                        'start': start.isoformat() + 'Z',
                        'end': end.isoformat() + 'Z',
                        'attendees': [email for email in attendees if email],
                    },
                )
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalServiceError('Meeting link service is unavailable.') from exc

        url = body.get('meeting_url') or body.get('hangoutLink') or body.get('url')
        if not url:
            raise ExternalServiceError('Meeting link service returned no link.')
        logger.info('Meeting link created for %s', title)
        return url
