import logging
from typing import Any, Dict, List, Optional

import httpx

from .config import settings
from .models import utcnow

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10.0


class Notifier:
    """
    Best-effort follow-ups once a page's ads are stored.

    Every public method logs and swallows its own errors: a failed
    notification never changes the job's outcome.
    """
    def __init__(self, url: Optional[str] = None, key: Optional[str] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.url = (url or settings.supabase_url).rstrip("/")
        self.key = key or settings.supabase_key
        self.client = client or httpx.AsyncClient(base_url=self.url, timeout=REQUEST_TIMEOUT)
        self.headers = {
            "apikey": self.key,
            "Authorization": f"Bearer {self.key}",
            "Content-Type": "application/json",
        }

    async def _get(self, table: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        response = await self.client.get(f"/rest/v1/{table}", params=params, headers=self.headers)
        response.raise_for_status()
        return response.json()

    async def _brand(self, page_id: str) -> Optional[Dict[str, Any]]:
        brands = await self._get("brands", {"platform_id": f"eq.{page_id}", "select": "id,name"})
        if not brands:
            logger.warning(f"No brand found for page_id {page_id}")
            return None
        return brands[0]

    async def on_page_completed(self, page_id: str, period: Optional[str] = None) -> None:
        await self.mark_request_complete(page_id)
        user_id = await self.link_user_brand_and_notify(page_id)
        # Only "get new ads" runs carry a period; they move the user's last_scrap forward
        if period and user_id:
            await self.update_last_scrap(page_id, user_id)

    async def mark_request_complete(self, page_id: str) -> bool:
        try:
            response = await self.client.patch(
                "/rest/v1/ads_scrape_request",
                params={"page_id": f"eq.{page_id}"},
                json={"complete": True},
                headers=self.headers,
            )
            response.raise_for_status()
            logger.info(f"Marked scrape request complete for page_id {page_id}")
            return True
        except httpx.HTTPError as e:
            logger.error(f"Error marking scrape request complete for page_id {page_id}: {e}")
            return False

    async def link_user_brand_and_notify(self, page_id: str) -> Optional[str]:
        """
        Links the requesting user to the brand and tells them the scrape is done.

        Returns:
            The requesting user's id, or None if any lookup failed.
        """
        try:
            requests = await self._get("ads_scrape_request", {
                "page_id": f"eq.{page_id}",
                "select": "id,user_id,created_at",
            })
            if not requests or not requests[0].get("user_id"):
                logger.warning(f"No user request found for page_id {page_id}")
                return None
            user_id = requests[0]["user_id"]
            requested_at = requests[0].get("created_at")

            brand = await self._brand(page_id)
            if brand is None:
                return None

            existing = await self._get("user_brand", {
                "user_id": f"eq.{user_id}",
                "brand_id": f"eq.{brand['id']}",
                "select": "id",
            })
            if not existing:
                response = await self.client.post(
                    "/rest/v1/user_brand",
                    json={"user_id": user_id, "brand_id": brand["id"], "last_scrap": requested_at},
                    headers=self.headers,
                )
                response.raise_for_status()
                logger.info(f"Linked user {user_id} to brand {brand['id']}")

            response = await self.client.post(
                "/rest/v1/user_notification_v2",
                json={
                    "user_id": user_id,
                    "message": f"Your ad scrape request for {brand.get('name') or 'Unknown Brand'} has been completed",
                },
                headers=self.headers,
            )
            response.raise_for_status()
            logger.info(f"Notified user {user_id}")
            return user_id
        except httpx.HTTPError as e:
            logger.error(f"Error linking user brand for page_id {page_id}: {e}")
            return None

    async def update_last_scrap(self, page_id: str, user_id: str) -> bool:
        try:
            brand = await self._brand(page_id)
            if brand is None:
                return False
            response = await self.client.patch(
                "/rest/v1/user_brand",
                params={"user_id": f"eq.{user_id}", "brand_id": f"eq.{brand['id']}"},
                json={"last_scrap": utcnow().isoformat()},
                headers=self.headers,
            )
            response.raise_for_status()
            logger.info(f"Updated last_scrap for user {user_id}, brand {brand['id']}")
            return True
        except httpx.HTTPError as e:
            logger.error(f"Error updating last_scrap for page_id {page_id}: {e}")
            return False

    async def aclose(self) -> None:
        await self.client.aclose()
