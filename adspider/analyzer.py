import json
import logging
import os
import re
import tempfile
from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from .config import settings
from .hook_validator import validate_hook
from .models import (
    AdAnalysis, CopyAnalysis, Headline, HookAnalysis, ImageAnalysis,
    Persona, Scores, TextAnalysis, VideoAnalysis,
)
from .prompts import (
    IMAGE_HEADLINE_PROMPT, SYSTEM_PROMPT, TEXT_ANALYSIS_PROMPT,
    VIDEO_TRANSCRIPT_PROMPT, render,
)
from .speech_filter import check_speech

logger = logging.getLogger(__name__)

WHISPER_MODEL = "whisper-1"
MAX_TOKENS = 2000
TEMPERATURE = 0.3
DOWNLOAD_TIMEOUT = 120.0

M = TypeVar("M", bound=BaseModel)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


class Transcript(BaseModel):
    text: str = ""
    segments: List[Any] = []


def parse_json_reply(content: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parses a model reply, tolerating a surrounding markdown code fence."""
    if not content:
        return None
    cleaned = _FENCE.sub("", content.strip())
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse model JSON: {e}")
        logger.debug(f"Raw content: {content[:500]}")
        return None
    return data if isinstance(data, dict) else None


def _sub_record(model: Type[M], data: Any) -> Optional[M]:
    if not isinstance(data, dict) or not data:
        return None
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Discarding malformed {model.__name__}: {e.error_count()} error(s)")
        return None


# -- Apify ad item accessors --

def _snapshot(ad: Dict[str, Any]) -> Dict[str, Any]:
    return ad.get("snapshot") or {}


def ad_copy(ad: Dict[str, Any]) -> str:
    body = _snapshot(ad).get("body") or {}
    if isinstance(body, dict):
        return body.get("text") or ""
    return str(body)


def video_url(ad: Dict[str, Any]) -> Optional[str]:
    videos = _snapshot(ad).get("videos") or []
    if videos:
        return videos[0].get("video_hd_url") or videos[0].get("video_sd_url")
    return ad.get("video_url")


def image_url(ad: Dict[str, Any]) -> Optional[str]:
    snapshot = _snapshot(ad)
    images = snapshot.get("images") or []
    if images:
        return images[0].get("original_image_url") or images[0].get("resized_image_url")
    videos = snapshot.get("videos") or []
    if videos and videos[0].get("video_preview_image_url"):
        return videos[0]["video_preview_image_url"]
    return ad.get("image_url") or snapshot.get("image_url")


class AdAnalyzer:
    """
    Extracts hook, persona and headline from one scraped ad.

    Video ads go through Whisper, the speech filter and the hook validator;
    image-only ads get a headline from the vision model; ads with copy but no
    media get a text analysis. Provider errors propagate to the caller.
    """
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.model = model or settings.openai_model
        self.client = client or AsyncOpenAI(api_key=api_key or settings.openai_api_key)
        self.http = http_client or httpx.AsyncClient(timeout=DOWNLOAD_TIMEOUT, follow_redirects=True)
        self.total_tokens = 0

    async def analyze_item(self, ad: Dict[str, Any]) -> Optional[AdAnalysis]:
        brand_name = ad.get("page_name") or "Unknown"
        cta_text = _snapshot(ad).get("cta_text") or ""

        video = video_url(ad)
        if video:
            logger.info("Video ad detected, transcribing...")
            return await self.analyze_video(video, image_url(ad), brand_name, cta_text)

        image = image_url(ad)
        if image:
            logger.info("Image-only ad detected, generating headline...")
            headline = await self.image_headline(image, brand_name, cta_text)
            return ImageAnalysis(headline=headline)

        copy = ad_copy(ad)
        if copy:
            logger.info("Text-only ad detected, analyzing copy...")
            return await self.analyze_text(copy, brand_name, cta_text, _snapshot(ad).get("cta_type") or "")

        logger.warning("No video, image or copy found in ad; skipping analysis.")
        return None

    async def analyze_video(
        self, video: str, fallback_image: Optional[str], brand_name: str, cta_text: str
    ) -> Optional[VideoAnalysis]:
        transcript = await self.transcribe(video)
        check = check_speech(transcript.segments, transcript.text)

        if not check.has_speech:
            analysis = VideoAnalysis(speech_rejection=check.reason)
            if fallback_image:
                logger.info(f"No usable speech ({check.reason}); falling back to image headline.")
                analysis.headline = await self.image_headline(fallback_image, brand_name, cta_text)
            return analysis

        logger.info(f"Transcript usable ({len(check.text)} chars), analyzing...")
        prompt = render(VIDEO_TRANSCRIPT_PROMPT, brand_name=brand_name, transcript=check.text)
        data = await self._complete("video", prompt)
        if data is None:
            return None

        raw_hook = data.get("hook") if isinstance(data.get("hook"), dict) else {}
        candidate = raw_hook.get("text") or raw_hook.get("audio_hook")
        validation = validate_hook(candidate, check.text)

        hook = None
        if validation.hook:
            hook = _sub_record(HookAnalysis, {**raw_hook, "text": validation.hook})

        return VideoAnalysis(
            hook=hook,
            headline=self._headline(data.get("headline")),
            persona=_sub_record(Persona, data.get("persona")),
            scores=_sub_record(Scores, data.get("scores")),
            transcript=check.text,
            hook_validation=validation,
        )

    async def analyze_text(self, copy: str, brand_name: str, cta_text: str, cta_type: str) -> Optional[TextAnalysis]:
        prompt = render(
            TEXT_ANALYSIS_PROMPT, ad_copy=copy, brand_name=brand_name, cta_text=cta_text, cta_type=cta_type
        )
        data = await self._complete("text", prompt)
        if data is None:
            return None
        return TextAnalysis(
            hook=_sub_record(HookAnalysis, data.get("hook")),
            headline=self._headline(data.get("headline")),
            persona=_sub_record(Persona, data.get("persona")),
            scores=_sub_record(Scores, data.get("scores")),
            copy_analysis=_sub_record(CopyAnalysis, data.get("ad_copy_analysis")),
        )

    async def image_headline(self, image: str, brand_name: str, cta_text: str) -> Optional[Headline]:
        prompt = render(IMAGE_HEADLINE_PROMPT, brand_name=brand_name, cta_text=cta_text)
        content = [
            {"type": "text", "text": prompt},
            {"type": "image_url", "image_url": {"url": image}},
        ]
        data = await self._complete("visual", content)
        if data is None:
            return None
        return self._headline(data.get("headline"))

    @staticmethod
    def _headline(data: Any) -> Optional[Headline]:
        if isinstance(data, str):
            data = {"primary": data}
        headline = _sub_record(Headline, data)
        if headline is None or headline.is_empty:
            return None
        return headline

    async def _complete(self, kind: str, content: Any) -> Optional[Dict[str, Any]]:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT.format(kind=kind)},
                {"role": "user", "content": content},
            ],
            max_tokens=MAX_TOKENS,
            temperature=TEMPERATURE,
        )
        if response.usage is not None:
            self.total_tokens += response.usage.total_tokens
        return parse_json_reply(response.choices[0].message.content)

    async def transcribe(self, media_url: str) -> Transcript:
        """Downloads the media to a temp file and runs Whisper with segment timings."""
        fd, path = tempfile.mkstemp(suffix=".mp4")
        try:
            with os.fdopen(fd, "wb") as out:
                async with self.http.stream("GET", media_url) as response:
                    response.raise_for_status()
                    async for chunk in response.aiter_bytes():
                        out.write(chunk)

            with open(path, "rb") as audio:
                result = await self.client.audio.transcriptions.create(
                    model=WHISPER_MODEL,
                    file=audio,
                    response_format="verbose_json",
                    timestamp_granularities=["segment"],
                )
        finally:
            os.unlink(path)

        return Transcript(text=result.text or "", segments=list(result.segments or []))

    async def aclose(self) -> None:
        await self.http.aclose()
        await self.client.close()
