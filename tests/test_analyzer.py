import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from adspider.analyzer import AdAnalyzer, Transcript, image_url, parse_json_reply, video_url
from adspider.models import HookSource, ImageAnalysis, TextAnalysis, VideoAnalysis


SPEECH = (
    "Are you tired of waking up with sore shoulders every single morning? "
    "This pillow was designed by sleep experts to support your neck all night long."
)


def chat_reply(payload, tokens=120):
    content = payload if isinstance(payload, str) else json.dumps(payload)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(total_tokens=tokens),
    )


@pytest.fixture
def openai_client():
    client = MagicMock()
    client.chat.completions.create = AsyncMock()
    client.audio.transcriptions.create = AsyncMock()
    client.close = AsyncMock()
    return client


@pytest.fixture
def analyzer(openai_client):
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"x")))
    return AdAnalyzer(model="gpt-4o-mini", client=openai_client, http_client=http)


def video_ad():
    return {
        "page_name": "SleepCo",
        "snapshot": {
            "videos": [{"video_hd_url": "https://cdn/v.mp4", "video_preview_image_url": "https://cdn/p.jpg"}],
            "cta_text": "Shop now",
        },
    }


@pytest.mark.asyncio
async def test_text_ad_is_analyzed_from_copy(analyzer, openai_client):
    openai_client.chat.completions.create.return_value = chat_reply({
        "hook": {"text": "Sleep better tonight", "type": "benefit", "score": 8},
        "headline": {"primary": "Sleep better"},
        "persona": {"age_range": "25-34", "interests": ["sleep"]},
        "scores": {"overall": 7},
        "ad_copy_analysis": {"tone": "casual"},
    })
    ad = {"page_name": "SleepCo", "snapshot": {"body": {"text": "Sleep better tonight."}}}

    result = await analyzer.analyze_item(ad)

    assert isinstance(result, TextAnalysis)
    assert result.hook.text == "Sleep better tonight"
    assert result.headline.primary == "Sleep better"
    assert result.persona.interests == ["sleep"]
    assert result.copy_analysis.tone == "casual"
    assert analyzer.total_tokens == 120


@pytest.mark.asyncio
async def test_image_ad_gets_headline_only(analyzer, openai_client):
    openai_client.chat.completions.create.return_value = chat_reply(
        "```json\n" + json.dumps({"headline": {"primary": "50% off"}}) + "\n```"
    )
    ad = {"snapshot": {"images": [{"original_image_url": "https://cdn/i.jpg"}]}}

    result = await analyzer.analyze_item(ad)

    assert isinstance(result, ImageAnalysis)
    assert result.headline.primary == "50% off"
    content = openai_client.chat.completions.create.call_args.kwargs["messages"][1]["content"]
    assert content[1]["image_url"]["url"] == "https://cdn/i.jpg"


@pytest.mark.asyncio
async def test_ad_without_media_or_copy_is_skipped(analyzer, openai_client):
    assert await analyzer.analyze_item({"snapshot": {}}) is None
    openai_client.chat.completions.create.assert_not_called()


@pytest.mark.asyncio
async def test_video_hook_from_middle_is_replaced_by_opening(analyzer, openai_client):
    analyzer.transcribe = AsyncMock(return_value=Transcript(
        text=SPEECH, segments=[{"text": SPEECH, "no_speech_prob": 0.05}]
    ))
    openai_client.chat.completions.create.return_value = chat_reply({
        "hook": {"text": "support your neck all night long", "type": "benefit", "score": 9},
        "headline": {"primary": "Wake up pain free"},
    })

    result = await analyzer.analyze_item(video_ad())

    assert isinstance(result, VideoAnalysis)
    assert result.hook_validation.source == HookSource.FIRST_SENTENCE
    assert result.hook.text == "Are you tired of waking up with sore shoulders every single morning?"
    assert result.hook.type == "benefit"
    assert result.transcript == SPEECH


@pytest.mark.asyncio
async def test_video_without_speech_falls_back_to_preview_headline(analyzer, openai_client):
    analyzer.transcribe = AsyncMock(return_value=Transcript(
        text="", segments=[{"text": "", "no_speech_prob": 0.95}]
    ))
    openai_client.chat.completions.create.return_value = chat_reply({"headline": {"primary": "Shop now"}})

    result = await analyzer.analyze_item(video_ad())

    assert result.speech_rejection == "no_speech"
    assert result.hook is None
    assert result.headline.primary == "Shop now"
    assert openai_client.chat.completions.create.await_count == 1


@pytest.mark.asyncio
async def test_provider_errors_propagate(analyzer, openai_client):
    openai_client.chat.completions.create.side_effect = RuntimeError("upstream down")
    ad = {"snapshot": {"body": {"text": "Copy"}}}

    with pytest.raises(RuntimeError):
        await analyzer.analyze_item(ad)


@pytest.mark.asyncio
async def test_transcribe_downloads_and_calls_whisper(analyzer, openai_client):
    openai_client.audio.transcriptions.create.return_value = SimpleNamespace(
        text=SPEECH, segments=[{"text": SPEECH, "no_speech_prob": 0.1}]
    )

    transcript = await analyzer.transcribe("https://cdn/v.mp4")

    assert transcript.text == SPEECH
    assert len(transcript.segments) == 1
    kwargs = openai_client.audio.transcriptions.create.call_args.kwargs
    assert kwargs["response_format"] == "verbose_json"
    assert kwargs["timestamp_granularities"] == ["segment"]


def test_parse_json_reply_handles_garbage():
    assert parse_json_reply(None) is None
    assert parse_json_reply("not json") is None
    assert parse_json_reply("[1, 2]") is None
    assert parse_json_reply('```\n{"a": 1}\n```') == {"a": 1}


def test_media_accessors():
    ad = video_ad()
    assert video_url(ad) == "https://cdn/v.mp4"
    assert image_url(ad) == "https://cdn/p.jpg"
    assert video_url({"snapshot": {}}) is None
