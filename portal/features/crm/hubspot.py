"""
HubSpot deal lookup for corporate (prepaid) registration.

A corporate user signs up with a deal id; the registration is accepted only
when their email is one of the deal's associated contacts.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx

from portal.core.config import settings
from portal.core.errors import ExternalServiceError, NotFoundError, ValidationError

logger = logging.getLogger("portal.crm")

HUBSPOT_API_URL = "https://api.hubapi.com"


@dataclass
class DealValidation:
    valid: bool
    deal_id: str
    deal_name: Optional[str] = None
    deal_stage: Optional[str] = None


class HubSpotClient:
    def __init__(self, api_key: Optional[str] = None, *, http: Optional[httpx.Client] = None, timeout: float = 10.0):
        self.api_key = api_key or settings.HUBSPOT_API_KEY
        self._http = http or httpx.Client(base_url=HUBSPOT_API_URL, timeout=timeout)

    def _get(self, path: str, **params) -> httpx.Response:
        if not self.api_key:
            raise ExternalServiceError("HubSpot integration not configured")
        try:
            return self._http.get(
                path,
                params=params or None,
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            raise ExternalServiceError("HubSpot request failed", details=str(e)) from e

    def _contact_emails(self, deal_id: str) -> List[str]:
        response = self._get(f"/crm/v3/objects/deals/{deal_id}/associations/contacts")
        if response.status_code >= 300:
            raise ExternalServiceError(f"Failed to fetch deal contacts: {response.status_code}")
        contact_ids = [r.get("id") for r in response.json().get("results", []) if r.get("id")]
        if not contact_ids:
            raise ValidationError("No contacts associated with deal")

        emails = []
        for contact_id in contact_ids:
            contact = self._get(f"/crm/v3/objects/contacts/{contact_id}", properties="email")
            if contact.status_code >= 300:
                logger.warning("crm.contact_fetch_failed", extra={"contact_id": contact_id, "status": contact.status_code})
                continue
            email = (contact.json().get("properties") or {}).get("email")
            if email:
                emails.append(email.strip().lower())
        return emails

    def validate_deal(self, deal_id: str, email: str) -> DealValidation:
        """
        Check that email belongs to a contact on the deal.

        Raises:
            ValidationError: Missing input or deal without contacts
            NotFoundError: Deal does not exist
            ExternalServiceError: HubSpot unavailable or not configured
        """
        if not deal_id or not email:
            raise ValidationError("Missing deal_id or email")

        response = self._get(f"/crm/v3/objects/deals/{deal_id}", associations="contacts")
        if response.status_code == 404:
            raise NotFoundError("Deal not found")
        if response.status_code >= 300:
            raise ExternalServiceError(f"HubSpot API error: {response.status_code}")
        properties = response.json().get("properties") or {}

        valid = email.strip().lower() in self._contact_emails(deal_id)
        result = DealValidation(
            valid=valid,
            deal_id=deal_id,
            deal_name=properties.get("dealname"),
            deal_stage=properties.get("dealstage"),
        )
        logger.info("crm.deal_validated", extra={"deal_id": deal_id, "valid": valid, "deal_stage": result.deal_stage})
        return result

    def is_email_authorized_for_deal(self, deal_id: str, email: str) -> bool:
        return self.validate_deal(deal_id, email).valid
