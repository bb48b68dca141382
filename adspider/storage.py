import hashlib
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from .config import settings
from .models import BatchSaveResult

logger = logging.getLogger(__name__)

ASSETS_BUCKET = "assets"
MAX_ASSETS_PER_AD = 5
PROGRESS_EVERY = 5
MIN_ASSET_BYTES = 100
REQUEST_TIMEOUT = 120.0

# (current, total, success, failed)
BatchProgressCallback = Callable[[int, int, int, int], Awaitable[None]]

_EXTENSIONS = (
    ("jpeg", "jpg"), ("jpg", "jpg"), ("png", "png"), ("gif", "gif"),
    ("webp", "webp"), ("video", "mp4"), ("mp4", "mp4"), ("octet-stream", "mp4"),
)


def hash_value(value: Any) -> str:
    raw = json.dumps(value, sort_keys=True, default=str) if isinstance(value, (dict, list)) else str(value)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def extension_for(content_type: Optional[str]) -> str:
    ct = (content_type or "").lower()
    for marker, ext in _EXTENSIONS:
        if marker in ct:
            return ext
    return "dat"


def _first(rows: Any) -> Optional[Dict[str, Any]]:
    if isinstance(rows, list):
        return rows[0] if rows else None
    return rows


def _to_iso(value: Any) -> Any:
    # Ad Library dates arrive as unix seconds or as strings
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()
    return value


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return [v for v in value if v]
    return [value]


def _round(value: Any) -> Optional[int]:
    try:
        return round(float(value)) if value is not None else None
    except (TypeError, ValueError):
        return None


def analysis_columns(analysis: Dict[str, Any]) -> Dict[str, Any]:
    """Flattens a serialized analysis record into ads table columns."""
    columns: Dict[str, Any] = {
        "analysis_mode": analysis.get("mode"),
        "analyzed_at": analysis.get("analyzed_at"),
        "analysis_raw": analysis,
    }

    hook = analysis.get("hook") or {}
    if hook.get("text"):
        columns["hook_text"] = str(hook["text"])[:2000]
        columns["hook_type"] = hook.get("type")
        columns["hook_score"] = _round(hook.get("score"))
        if hook.get("visual_hook"):
            columns["visual_hook"] = str(hook["visual_hook"])[:2000]

    headline = analysis.get("headline") or {}
    columns["headline_primary"] = headline.get("primary")
    columns["headline_secondary"] = headline.get("secondary")

    persona = analysis.get("persona") or {}
    if persona:
        columns.update({
            "persona_age_range": persona.get("age_range"),
            "persona_gender": persona.get("gender"),
            "persona_interests": persona.get("interests") or None,
            "persona_pain_points": persona.get("pain_points") or None,
            "persona_desires": persona.get("desires") or None,
            "persona_summary": persona.get("summary"),
        })

    copy = analysis.get("copy_analysis") or {}
    columns.update({
        "copy_emotion": copy.get("emotion"),
        "copy_tone": copy.get("tone"),
        "copy_summary": copy.get("summary"),
    })

    scores = analysis.get("scores") or {}
    columns.update({
        "score_hook": _round(scores.get("hook_strength")),
        "score_clarity": _round(scores.get("clarity")),
        "score_overall": _round(scores.get("overall")),
    })

    mode = analysis.get("mode") or ""
    columns["media_types_analyzed"] = ["video"] if mode.startswith("video") else [mode] if mode else None
    return columns


def _clean(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


class SupabaseStorage:
    """
    Persists scraped ads, their brand and their media assets to Supabase.

    Rows go through PostgREST; media files are copied from their remote URL
    into the Storage bucket so they outlive the Ad Library CDN links.
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
            "Prefer": "return=representation",
        }

    async def _get(self, table: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        response = await self.client.get(f"/rest/v1/{table}", params=params, headers=self.headers)
        response.raise_for_status()
        return response.json()

    async def _post(self, table: str, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        response = await self.client.post(f"/rest/v1/{table}", json=data, headers=self.headers)
        response.raise_for_status()
        return _first(response.json())

    async def _patch(self, table: str, params: Dict[str, str], data: Dict[str, Any]) -> None:
        response = await self.client.patch(f"/rest/v1/{table}", params=params, json=data, headers=self.headers)
        response.raise_for_status()

    async def save_raw_ads_batch(
        self, ads: List[Dict[str, Any]], progress: Optional[BatchProgressCallback] = None
    ) -> BatchSaveResult:
        total = len(ads)
        if not ads:
            return BatchSaveResult()

        logger.info(f"Saving {total} ads...")
        brand = await self.create_or_update_brand(self.brand_data(ads[0]))
        if not brand:
            return BatchSaveResult(failed=total, error="Failed to create brand")

        result = BatchSaveResult(brand_id=str(brand["id"]))
        for i, ad in enumerate(ads):
            try:
                ad_id = await self.save_raw_ad(ad, brand["id"])
                if ad_id:
                    result.success += 1
                    result.ad_ids.append(str(ad_id))
                else:
                    result.failed += 1
            except Exception as e:
                result.failed += 1
                logger.error(f"Failed to save ad {i + 1}/{total}: {e}")

            if progress and (i + 1) % PROGRESS_EVERY == 0:
                await progress(i + 1, total, result.success, result.failed)

        logger.info(f"Batch saved. Success: {result.success}, Failed: {result.failed}")
        return result

    @staticmethod
    def brand_data(ad: Dict[str, Any]) -> Dict[str, Any]:
        snapshot = ad.get("snapshot") or {}
        categories = snapshot.get("page_categories") or []
        return {
            "name": ad.get("page_name") or "Unknown",
            "platform_id": str(ad.get("page_id") or ""),
            "platform": "facebook",
            "logo_url": snapshot.get("page_profile_picture_url"),
            "platform_url": snapshot.get("page_profile_uri"),
            "category": categories[0] if categories else None,
        }

    async def create_or_update_brand(self, brand_data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Upserts a brand by its platform id, uploading the logo when it is missing."""
        platform_id = brand_data["platform_id"]
        existing = _first(await self._get("brands", {
            "platform_id": f"eq.{platform_id}",
            "select": "id,name,logo_url",
        }))

        if existing:
            if not existing.get("logo_url") and brand_data.get("logo_url"):
                logo_path = await self.upload_file(f"brands/{platform_id}", brand_data["logo_url"])
                if logo_path:
                    await self._patch("brands", {"id": f"eq.{existing['id']}"}, {"logo_url": logo_path})
                    existing["logo_url"] = logo_path
            return existing

        new_brand = {k: v for k, v in brand_data.items() if k != "logo_url"}
        if brand_data.get("logo_url"):
            new_brand["logo_url"] = await self.upload_file(f"brands/{platform_id}", brand_data["logo_url"])
        new_brand["hash_value"] = hash_value(brand_data)
        return await self._post("brands", _clean(new_brand))

    def ad_row(self, raw_ad: Dict[str, Any], brand_id: Any) -> Dict[str, Any]:
        snapshot = raw_ad.get("snapshot") or {}
        body = snapshot.get("body") or {}
        copy = (body.get("text") or "") if isinstance(body, dict) else str(body)
        platform_id = str(raw_ad.get("ad_archive_id") or "")

        row: Dict[str, Any] = {
            "brand_id": brand_id,
            "platform_id": platform_id,
            "hash_value": hash_value({"platform_id": platform_id}),
            "ad_copy": copy[:10000],
            "cta_type": snapshot.get("cta_type"),
            "cta_text": snapshot.get("cta_text"),
            "cta_link": snapshot.get("link_url"),
            "live_status": "active" if raw_ad.get("is_active") else "inactive",
            "country_code": _as_list(raw_ad.get("targeted_or_reached_countries") or raw_ad.get("countries")),
            "categories": raw_ad.get("categories") or [],
            "publisher_platforms": _as_list(raw_ad.get("publisher_platform") or raw_ad.get("publisher_platforms")),
            "start_date": _to_iso(raw_ad.get("start_date")),
            "end_date": _to_iso(raw_ad.get("end_date")),
            "raw_data": raw_ad,
        }
        if raw_ad.get("analysis"):
            row.update(analysis_columns(raw_ad["analysis"]))
        return _clean(row)

    async def save_raw_ad(self, raw_ad: Dict[str, Any], brand_id: Any) -> Optional[Any]:
        row = self.ad_row(raw_ad, brand_id)
        try:
            created = await self._post("ads", row)
        except httpx.HTTPStatusError as e:
            logger.error(f"Ad insert failed ({e.response.status_code}): {e.response.text[:500]}")
            # Large JSON columns are the usual culprit; retry without them
            slim = {k: v for k, v in row.items() if k not in ("raw_data", "analysis_raw")}
            created = await self._post("ads", slim)

        ad_id = created.get("id") if created else None
        if not ad_id:
            return None

        logger.info(f"Created ad {ad_id}")
        await self.save_assets(ad_id, raw_ad.get("snapshot") or {})
        await self.update_ad_status(ad_id, "completed")
        return ad_id

    async def save_assets(self, ad_id: Any, snapshot: Dict[str, Any]) -> int:
        assets = []
        for img in snapshot.get("images") or []:
            assets.append({
                "media_type": "image",
                "thumbnail_url": img.get("resized_image_url"),
                "media_hd_url": img.get("original_image_url") or img.get("resized_image_url"),
            })
        for vid in snapshot.get("videos") or []:
            assets.append({
                "media_type": "video",
                "thumbnail_url": vid.get("video_preview_image_url"),
                "media_sd_url": vid.get("video_sd_url"),
                "media_hd_url": vid.get("video_hd_url"),
            })
        for card in snapshot.get("cards") or []:
            assets.append({
                "media_type": "image",
                "thumbnail_url": card.get("resized_image_url"),
                "media_hd_url": card.get("original_image_url") or card.get("resized_image_url"),
            })

        saved = 0
        for asset in assets[:MAX_ASSETS_PER_AD]:
            try:
                if await self.create_ad_asset(ad_id, asset):
                    saved += 1
            except httpx.HTTPError as e:
                logger.warning(f"Failed to save asset for ad {ad_id}: {e}")
        return saved

    async def create_ad_asset(self, ad_id: Any, asset: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        folder = f"ads/{ad_id}"
        paths = {}
        for field in ("thumbnail_url", "media_sd_url", "media_hd_url"):
            if asset.get(field):
                paths[field] = await self.upload_file(folder, asset[field])

        if not any(paths.values()):
            logger.warning(f"No files uploaded for ad {ad_id}; skipping asset.")
            return None

        return await self._post("assets", _clean({
            "ad_id": ad_id,
            "media_type": asset.get("media_type", "image"),
            "hash_value": hash_value({"ad_id": ad_id, "hd": paths.get("media_hd_url")}),
            **paths,
        }))

    async def upload_file(self, folder: str, remote_url: str) -> Optional[str]:
        """Copies a remote file into the assets bucket. Returns its storage path or None."""
        if not remote_url or not remote_url.startswith("http"):
            return None
        try:
            download = await self.client.get(remote_url, follow_redirects=True, timeout=60.0)
            download.raise_for_status()
            data = download.content
            if len(data) < MIN_ASSET_BYTES:
                logger.warning(f"Downloaded file too small ({len(data)} bytes): {remote_url[:60]}")
                return None

            content_type = download.headers.get("content-type", "application/octet-stream")
            path = f"{folder}/{uuid.uuid4().hex[:12]}.{extension_for(content_type)}"
            upload = await self.client.post(
                f"/storage/v1/object/{ASSETS_BUCKET}/{path}",
                content=data,
                headers={
                    "apikey": self.key,
                    "Authorization": f"Bearer {self.key}",
                    "Content-Type": content_type,
                    "x-upsert": "true",
                },
            )
            upload.raise_for_status()
            logger.debug(f"Uploaded {path} ({len(data)} bytes)")
            return path
        except httpx.HTTPError as e:
            logger.error(f"Error uploading {remote_url[:60]}: {e}")
            return None

    async def update_ad_status(self, ad_id: Any, status: str) -> None:
        try:
            await self._patch("ads", {"id": f"eq.{ad_id}"}, {"process_status": status})
        except httpx.HTTPError as e:
            logger.warning(f"Failed to update status of ad {ad_id}: {e}")

    async def aclose(self) -> None:
        await self.client.aclose()
