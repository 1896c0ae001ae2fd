"""Operational alerts posted to a Slack incoming webhook."""

import logging
from typing import Optional

import httpx

from portal.core.config import settings

logger = logging.getLogger("portal.alerts")


class SlackAlerter:
    def __init__(self, webhook_url: Optional[str] = None, *, http: Optional[httpx.Client] = None):
        self.webhook_url = webhook_url or settings.SLACK_WEBHOOK_URL
        self._http = http

    def post(self, text: str) -> bool:
        """Post a plain text alert. Returns False when it could not be delivered."""
        if not self.webhook_url:
            logger.warning("alert.not_configured", extra={"alert_text": text[:200]})
            return False

        client = self._http or httpx.Client(timeout=10.0)
        try:
            response = client.post(self.webhook_url, json={"text": text})
        except httpx.HTTPError as e:
            logger.error("alert.failed", extra={"error": str(e)})
            return False
        finally:
            if self._http is None:
                client.close()

        if response.status_code >= 300:
            logger.error("alert.failed", extra={"status": response.status_code})
            return False
        return True
