import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import BaseModel

from .config import settings
from .models import ScrapeFilters, ScrapeProgress

logger = logging.getLogger(__name__)

APIFY_BASE_URL = "https://api.apify.com/v2"
POLL_INTERVAL = 1.0  # seconds
MAX_POLLS = 3600  # one hour at one poll per second
REQUEST_TIMEOUT = 60.0

FAILED_STATES = {"FAILED", "ABORTED", "TIMED-OUT"}


class ScrapeError(Exception):
    """Any failure of the scrape step. Terminal for the job."""

    @property
    def user_message(self) -> str:
        return f"Scraping failed: {self}"


class ScrapeUsageLimitError(ScrapeError):
    @property
    def user_message(self) -> str:
        return "Apify monthly usage limit exceeded. Please upgrade your Apify plan or wait for the limit to reset."


class ScrapeRateLimitError(ScrapeError):
    @property
    def user_message(self) -> str:
        return "Apify rate limit exceeded. Please try again later."


class ScrapeTimeoutError(ScrapeError):
    pass


def classify_error(message: str, status_code: Optional[int] = None) -> ScrapeError:
    lowered = message.lower()
    if "usage limit" in lowered or "usage hard limit" in lowered:
        return ScrapeUsageLimitError(message)
    if "rate limit" in lowered or status_code == 429:
        return ScrapeRateLimitError(message)
    return ScrapeError(message)


class ProgressObserver(Protocol):
    async def publish(self, event: ScrapeProgress) -> None:
        ...


class ScrapeRun(BaseModel):
    run_id: str
    dataset_id: str


class RunStatus(BaseModel):
    state: str
    items_processed: Optional[int] = None
    message: Optional[str] = None


class ApifyScraper:
    """
    Runs the Facebook Ad Library actor on Apify and collects its dataset.

    The actor is started without waiting, then its run is polled once per
    poll_interval until it succeeds, fails, or max_polls is exhausted.
    """
    def __init__(
        self,
        api_token: Optional[str] = None,
        actor_id: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        poll_interval: float = POLL_INTERVAL,
        max_polls: int = MAX_POLLS,
    ):
        self.api_token = api_token or settings.apify_api_token
        if not self.api_token:
            raise ValueError("APIFY_API_TOKEN is not configured.")
        # Apify addresses "user/actor" as "user~actor" in URLs
        self.actor_id = (actor_id or settings.apify_actor_id).replace("/", "~")
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._client = client or httpx.AsyncClient(base_url=APIFY_BASE_URL, timeout=REQUEST_TIMEOUT)
        self._headers = {"Authorization": f"Bearer {self.api_token}"}

    @staticmethod
    def build_input(url: str, max_items: int, filters: Optional[ScrapeFilters] = None) -> Dict[str, Any]:
        run_input: Dict[str, Any] = {
            "urls": [{"url": url}],
            "count": max_items,
            "scrapeAdDetails": False,
            "scrapePageAds.activeStatus": "all",
            "scrapePageAds.countryCode": "ALL",
            "scrapePageAds.sortBy": "most_recent",
        }
        if filters is None:
            return run_input

        # A period filter wins over explicit dates
        if filters.period:
            run_input["period"] = filters.period
        else:
            if filters.start_date:
                run_input["scrapePageAds.startDate"] = filters.start_date
            if filters.end_date:
                run_input["scrapePageAds.endDate"] = filters.end_date
        return run_input

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, headers=self._headers, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            message = e.response.text
            try:
                message = e.response.json()["error"]["message"]
            except (ValueError, KeyError, TypeError):
                pass
            raise classify_error(message, e.response.status_code) from e
        except httpx.HTTPError as e:
            raise ScrapeError(str(e) or e.__class__.__name__) from e
        return response.json()

    async def submit(self, url: str, max_items: int, filters: Optional[ScrapeFilters] = None) -> ScrapeRun:
        run_input = self.build_input(url, max_items, filters)
        logger.info(f"Starting Apify actor {self.actor_id} for {url[:80]} (max {max_items}).")
        payload = await self._request("POST", f"/acts/{self.actor_id}/runs", json=run_input)
        data = payload["data"]
        run = ScrapeRun(run_id=data["id"], dataset_id=data["defaultDatasetId"])
        logger.info(f"Apify run started: {run.run_id}")
        return run

    async def poll_status(self, run: ScrapeRun) -> RunStatus:
        payload = await self._request("GET", f"/actor-runs/{run.run_id}")
        data = payload["data"]
        stats = data.get("stats") or {}
        return RunStatus(
            state=data.get("status", "UNKNOWN"),
            items_processed=stats.get("itemsProcessed"),
            message=data.get("statusMessage"),
        )

    async def fetch_results(self, run: ScrapeRun) -> List[Dict[str, Any]]:
        items = await self._request(
            "GET", f"/datasets/{run.dataset_id}/items", params={"clean": "true", "format": "json"}
        )
        logger.info(f"Fetched {len(items)} items from dataset {run.dataset_id}.")
        return items

    async def scrape(
        self,
        url: str,
        max_items: int,
        filters: Optional[ScrapeFilters] = None,
        observer: Optional[ProgressObserver] = None,
    ) -> List[Dict[str, Any]]:
        async def publish(current: int, total: int, message: str):
            if observer is not None:
                await observer.publish(ScrapeProgress(current=current, total=total, message=message))

        await publish(0, max_items, "Starting Apify actor...")
        run = await self.submit(url, max_items, filters)
        await publish(0, max_items, "Waiting for actor to complete...")

        for _ in range(self.max_polls):
            status = await self.poll_status(run)
            if status.state == "SUCCEEDED":
                logger.info(f"Apify run {run.run_id} succeeded.")
                break
            if status.state in FAILED_STATES:
                message = status.message or "Actor run failed"
                logger.error(f"Apify run {run.run_id} {status.state.lower()}: {message}")
                raise ScrapeError(f"Apify run failed: {message}")
            if status.state == "RUNNING" and status.items_processed:
                processed = status.items_processed
                await publish(processed, max_items, f"Processing... {processed}/{max_items}")
            await asyncio.sleep(self.poll_interval)
        else:
            raise ScrapeTimeoutError(
                f"Apify run timed out after {self.max_polls * self.poll_interval:.0f} seconds"
            )

        await publish(0, max_items, "Fetching results from dataset...")
        items = await self.fetch_results(run)
        await publish(len(items), max_items, "Fetching complete")
        return items

    async def aclose(self) -> None:
        await self._client.aclose()
