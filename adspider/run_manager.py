import logging
import re
import uuid
from typing import List, Optional

from pydantic import BaseModel, Field

from .config import AppConfig, settings
from .job_store import JobStore
from .models import JobSpec

logger = logging.getLogger(__name__)

AD_LIBRARY_URL = (
    "https://www.facebook.com/ads/library/?active_status=all&ad_type=all&country=ALL"
    "&is_targeted_country=false&media_type=all&search_type=page&view_all_page_id={page_id}"
)

_PAGE_ID = re.compile(r"(?:view_all_page_id|page_id)=(\d+)")


class SubmissionError(ValueError):
    pass


class SubmissionResult(BaseModel):
    job_ids: List[str] = Field(default_factory=list)
    message: str = ""


def extract_page_id(url: str) -> str:
    match = _PAGE_ID.search(url or "")
    return match.group(1) if match else "unknown"


def page_url(page_id: str) -> str:
    return AD_LIBRARY_URL.format(page_id=page_id)


class RunManager:
    """
    Turns a list of Facebook page ids into queued scrape jobs, one per page.
    """
    def __init__(self, store: JobStore, config: AppConfig = settings):
        self.store = store
        self.config = config

    def validate(self, page_ids: List[str], max_items: int, has_date_filter: bool) -> None:
        if not page_ids:
            raise SubmissionError("No page ids provided.")
        if len(page_ids) > self.config.max_brands:
            raise SubmissionError(f"At most {self.config.max_brands} pages per submission.")
        # Date-filtered runs are bounded by the window, not the item cap
        if max_items > self.config.max_ads_per_brand and not has_date_filter:
            raise SubmissionError(
                f"max_items cannot exceed {self.config.max_ads_per_brand} without a date filter."
            )

    async def submit_pages(
        self,
        page_ids: List[str],
        max_items: Optional[int] = None,
        save_raw: bool = True,
        save_store: bool = True,
        auto_analyze: bool = True,
        analysis_mode: str = "balanced",
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        period: Optional[str] = None,
    ) -> SubmissionResult:
        """
        Creates and queues a job for every distinct page id.

        Returns:
            SubmissionResult with the ids of the jobs actually created.
        """
        unique_ids = []
        for page_id in page_ids:
            page_id = (page_id or "").strip()
            if not page_id:
                logger.warning("Skipping empty page id.")
                continue
            if page_id not in unique_ids:
                unique_ids.append(page_id)

        max_items = max_items or self.config.max_ads_per_brand
        self.validate(unique_ids, max_items, bool(start_date or end_date or period))

        result = SubmissionResult()
        for page_id in unique_ids:
            spec = JobSpec(
                job_id=uuid.uuid4().hex[:8],
                url=page_url(page_id),
                max_items=max_items,
                save_raw=save_raw,
                save_store=save_store,
                auto_analyze=auto_analyze,
                analysis_mode=analysis_mode,
                page_id=page_id,
                start_date=start_date,
                end_date=end_date,
                period=period,
            )
            job = await self.store.create_job(spec)
            if job is None:
                logger.error(f"Failed to queue job for page {page_id}.")
                continue
            result.job_ids.append(job.job_id)

        queued = len(result.job_ids)
        if queued == 0:
            result.message = "No jobs were queued; the job store is unavailable."
        elif queued < len(unique_ids):
            result.message = f"Queued {queued}/{len(unique_ids)} page(s)."
        else:
            result.message = f"Queued {queued} page(s)."
        logger.info(result.message)
        return result
