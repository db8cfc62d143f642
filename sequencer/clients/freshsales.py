"""Freshsales CRM client for account lookup and activity logging."""

from typing import Optional
from urllib.parse import quote

import httpx
import structlog

from sequencer.core.config import CrmConfig

log = structlog.get_logger()


def root_domain(domain: str) -> str:
    """Strip scheme and www. from a company domain."""
    domain = domain.lower().strip()
    for prefix in ("https://", "http://"):
        if domain.startswith(prefix):
            domain = domain[len(prefix):]
    domain = domain.split("/")[0]
    if domain.startswith("www."):
        domain = domain[4:]
    return domain


def contact_url(crm_domain: str, contact_id: str) -> str:
    return f"https://{crm_domain}.freshsales.io/contacts/{contact_id}"


def search_url(crm_domain: str, query: str) -> str:
    return f"https://{crm_domain}.freshsales.io/search?q={quote(query, safe='')}"


class FreshsalesClient:
    """Client for the Freshsales REST API."""

    def __init__(self, config: CrmConfig):
        self.config = config

    @property
    def base_url(self) -> str:
        return f"https://{self.config.domain}.freshsales.io/api"

    def _headers(self) -> dict:
        return {
            "Authorization": f"Token token={self.config.api_key}",
            "Content-Type": "application/json",
        }

    def is_available(self) -> bool:
        """True when the integration is enabled and credentials are configured."""
        return bool(self.config.enabled and self.config.api_key and self.config.domain)

    async def find_account(self, domain: str) -> Optional[dict]:
        """Find the sales account whose website matches a company domain.

        Returns the account dict or None.
        """
        if not self.is_available():
            log.warning("freshsales_not_configured")
            return None

        try:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                response = await client.post(
                    f"{self.base_url}/filtered_search/sales_account",
                    headers=self._headers(),
                    json={
                        "filter_rule": [
                            {
                                "attribute": "website",
                                "operator": "contains",
                                "value": root_domain(domain),
                            }
                        ],
                        "page": 1,
                    },
                )
                response.raise_for_status()
                data = response.json()

                accounts = data.get("sales_accounts", [])
                log.info("freshsales_account_search_complete", domain=domain, count=len(accounts))
                return accounts[0] if accounts else None

        except Exception as e:
            log.error("freshsales_account_search_error", error=str(e), domain=domain)
            return None

    async def create_activity(
        self,
        title: str,
        notes: str,
        target_id: int,
        targetable_type: str = "SalesAccount",
    ) -> Optional[dict]:
        """Create a sales activity on an account or contact.

        Returns dict with the created activity id, or None on failure.
        """
        if not self.is_available():
            log.warning("freshsales_not_configured")
            return None

        try:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                response = await client.post(
                    f"{self.base_url}/sales_activities",
                    headers=self._headers(),
                    json={
                        "sales_activity": {
                            "title": title,
                            "notes": notes or "",
                            "targetable_type": targetable_type,
                            "targetable_id": target_id,
                        }
                    },
                )
                response.raise_for_status()
                activity = response.json().get("sales_activity", {})

                log.info("freshsales_activity_created", target_id=target_id, activity_id=activity.get("id"))
                return {"id": activity.get("id")}

        except Exception as e:
            log.error("freshsales_activity_error", error=str(e), target_id=target_id)
            return None
