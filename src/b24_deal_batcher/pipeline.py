"""Pipeline orchestration: fetch deals → tag them group by group."""

import logging
from typing import Callable, Optional

from b24_deal_batcher.config import Settings
from b24_deal_batcher.client.bitrix import BitrixClient
from b24_deal_batcher.deals.service import DealService, ProgressCallback
from b24_deal_batcher.models.job import BatchJobParams, JobSummary
from b24_deal_batcher.store.credential_store import CredentialStore

logger = logging.getLogger(__name__)


def build_service(settings: Settings, store: Optional[CredentialStore] = None) -> DealService:
    """Wire store → client → service from settings."""
    store = store or CredentialStore(settings)
    client = BitrixClient(store, timeout=settings.http_timeout)
    return DealService(client)


def run_job(
    service: DealService,
    params: BatchJobParams,
    *,
    progress_cb: Optional[ProgressCallback] = None,
    on_fetched: Optional[Callable[[int], None]] = None,
    should_cancel: Optional[Callable[[], bool]] = None,
) -> JobSummary:
    """
    Run one job: fetch all matching deals (up to params.max_deals), then tag them.
    Fetch errors propagate and nothing is tagged; per-deal update failures are
    counted in the returned summary.
    """
    deals = service.fetch_all_paginated(
        params.filter,
        select=params.select,
        order=params.order,
        max_items=params.max_deals,
    )
    logger.info("Fetched %d deals for filter %s", len(deals), params.filter)
    if on_fetched is not None:
        on_fetched(len(deals))
    if not deals:
        return JobSummary(dry_run=params.dry_run)

    summary = service.tag_by_groups(deals, params, progress_cb=progress_cb, should_cancel=should_cancel)
    logger.info(
        "Job finished%s: %d processed, %d failed, %d skipped in %d groups",
        " (dry run)" if params.dry_run else "",
        summary.processed, summary.failed, summary.skipped, summary.groups,
    )
    return summary
