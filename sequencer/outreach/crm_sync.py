"""Best-effort mirroring of completed steps into the CRM."""

import asyncio
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Optional

import structlog

from sequencer.clients.freshsales import FreshsalesClient
from sequencer.services.snapshot_cache import SnapshotCache

log = structlog.get_logger()

MAX_NOTES_CHARS = 500


class CrmSyncSidecar:
    """Runs CRM activity creation on its own worker threads.

    Jobs run in a fresh event loop per worker call, so they outlive the
    request (and loop) that queued them. Every failure is logged and dropped;
    nothing is retried.
    """

    def __init__(self, crm: FreshsalesClient, cache: SnapshotCache, workers: int = 2):
        self.crm = crm
        self.cache = cache
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="crm-sync")
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    def submit(self, company_domain: str, channel: str, draft_content: Optional[str]) -> Optional[Future]:
        """Queue a sync job. Never raises."""
        try:
            future = self._executor.submit(self._run, company_domain, channel, draft_content)
        except RuntimeError as e:
            # Executor already shut down
            log.warning("crm_sync_not_queued", domain=company_domain, error=str(e))
            return None

        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _run(self, company_domain: str, channel: str, draft_content: Optional[str]) -> bool:
        try:
            return asyncio.run(self.sync_step(company_domain, channel, draft_content))
        except Exception as e:
            log.warning("crm_sync_failed", domain=company_domain, channel=channel, error=str(e))
            return False

    async def sync_step(self, company_domain: str, channel: str, draft_content: Optional[str]) -> bool:
        """Create one CRM activity for a completed step.

        Returns True if an activity was created.
        """
        if not self.crm.is_available():
            return False

        account = self.cache.get_crm_account(company_domain)
        if account is None:
            account = await self.crm.find_account(company_domain)
        if not account or not account.get("id"):
            log.info("crm_sync_skipped", domain=company_domain, reason="no_account")
            return False

        notes = draft_content[:MAX_NOTES_CHARS] if isinstance(draft_content, str) else ""
        created = await self.crm.create_activity(
            title=f"Outreach: {channel} step completed",
            notes=notes,
            target_id=account["id"],
        )
        if created is None:
            return False

        log.info("crm_sync_complete", domain=company_domain, channel=channel)
        return True

    def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for queued jobs to finish."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self, wait_for_jobs: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_jobs)
