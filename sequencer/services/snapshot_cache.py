# sequencer/services/snapshot_cache.py
"""Short-lived cache of enrichment snapshots keyed by company domain."""

from pathlib import Path
from typing import Any, Optional

import structlog

from sequencer.core.db import DEFAULT_DB_PATH, cache_get, cache_set

log = structlog.get_logger()


def enriched_contacts_key(domain: str) -> str:
    return f"enriched:contacts:{domain}"


def company_key(domain: str) -> str:
    return f"company:{domain}"


def freshsales_key(domain: str) -> str:
    return f"freshsales:{domain}"


class SnapshotCache:
    """Read access to cached contact/company enrichment.

    A miss (or a failed read) is never an error: callers fall back to
    display defaults.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH, ttl_seconds: Optional[int] = 3600):
        self.db_path = db_path
        self.ttl_seconds = ttl_seconds

    def get(self, key: str) -> Optional[Any]:
        try:
            return cache_get(self.db_path, key)
        except Exception as e:
            log.warning("cache_read_failed", key=key, error=str(e))
            return None

    def set(self, key: str, value: Any) -> None:
        cache_set(self.db_path, key, value, self.ttl_seconds)

    def get_contacts(self, domain: str) -> list[dict]:
        cached = self.get(enriched_contacts_key(domain)) or {}
        return cached.get("contacts") or []

    def get_contact(self, domain: str, contact_id: str) -> Optional[dict]:
        """Find one cached contact at a company."""
        for contact in self.get_contacts(domain):
            if contact.get("id") == contact_id:
                return contact
        return None

    def get_company(self, domain: str) -> Optional[dict]:
        return self.get(company_key(domain))

    def get_crm_account(self, domain: str) -> Optional[dict]:
        """Get the cached Freshsales account for a company, if any."""
        intel = self.get(freshsales_key(domain)) or {}
        account = intel.get("account")
        if account and account.get("id"):
            return account
        return None

    def put_snapshot(
        self,
        domain: str,
        contacts: Optional[list[dict]] = None,
        company: Optional[dict] = None,
        crm_account: Optional[dict] = None,
    ) -> None:
        """Store a snapshot for a company (used by enrichment jobs and tests)."""
        if contacts is not None:
            self.set(enriched_contacts_key(domain), {"contacts": contacts})
        if company is not None:
            self.set(company_key(domain), company)
        if crm_account is not None:
            self.set(freshsales_key(domain), {"account": crm_account})


def contact_display_name(contact: Optional[dict], fallback: str) -> str:
    """Full name of a cached contact, or the fallback when unknown."""
    if not contact:
        return fallback
    name = f"{contact.get('firstName') or ''} {contact.get('lastName') or ''}".strip()
    return name or fallback


def company_display_name(company: Optional[dict], domain: str) -> str:
    if not company:
        return domain
    return company.get("name") or domain
