from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobProgress(BaseModel):
    scraped: int = Field(0, ge=0)
    analyzed: int = Field(0, ge=0)
    inserted: int = Field(0, ge=0)
    pending: int = Field(0, ge=0)
    failed: int = Field(0, ge=0)
    total: int = Field(0, ge=0)


class JobSpec(BaseModel):
    """What a caller submits: one scrape+analyze+persist request for one page."""
    job_id: str
    url: str
    max_items: int = Field(..., gt=0)
    save_raw: bool = True
    save_store: bool = True
    auto_analyze: bool = True
    analysis_mode: str = "balanced"
    page_id: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    period: Optional[str] = None


class Job(JobSpec):
    status: JobStatus = JobStatus.QUEUED
    progress: JobProgress = Field(default_factory=JobProgress)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobStats(BaseModel):
    total: int = 0
    queued: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    total_scraped: int = 0
    total_analyzed: int = 0
    total_inserted: int = 0
    total_pending: int = 0
    total_failed: int = 0


class ScrapeFilters(BaseModel):
    period: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None


class ScrapeProgress(BaseModel):
    current: int
    total: int
    message: str


# -- Hook validation / speech filtering --

class HookSource(str, Enum):
    GPT = "gpt"
    FIRST_SENTENCE = "first_sentence"
    FIRST_N_WORDS = "first_n_words"
    NONE = "none"


class HookValidationResult(BaseModel):
    hook: Optional[str] = None
    source: HookSource = HookSource.NONE
    score: float = Field(0.0, ge=0.0, le=1.0)
    reason: str = ""


class SpeechCheck(BaseModel):
    has_speech: bool
    reason: Optional[str] = None
    text: str = ""


# -- Analysis payloads, one record per mode --

class HookAnalysis(BaseModel):
    text: Optional[str] = None
    type: Optional[str] = None
    score: Optional[float] = None
    visual_hook: Optional[str] = None


class Headline(BaseModel):
    primary: Optional[str] = None
    secondary: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.primary or self.secondary)


class Persona(BaseModel):
    age_range: Optional[str] = None
    gender: Optional[str] = None
    interests: List[str] = Field(default_factory=list)
    pain_points: List[str] = Field(default_factory=list)
    desires: List[str] = Field(default_factory=list)
    income_level: Optional[str] = None
    lifestyle: Optional[str] = None
    summary: Optional[str] = None


class Scores(BaseModel):
    hook_strength: Optional[float] = None
    clarity: Optional[float] = None
    urgency: Optional[float] = None
    emotional_appeal: Optional[float] = None
    overall: Optional[float] = None


class CopyAnalysis(BaseModel):
    summary: Optional[str] = None
    emotion: Optional[str] = None
    tone: Optional[str] = None


class BaseAnalysis(BaseModel):
    headline: Optional[Headline] = None
    analyzed_at: datetime = Field(default_factory=utcnow)


class TextAnalysis(BaseAnalysis):
    mode: Literal["text"] = "text"
    hook: Optional[HookAnalysis] = None
    persona: Optional[Persona] = None
    scores: Optional[Scores] = None
    copy_analysis: Optional[CopyAnalysis] = None


class ImageAnalysis(BaseAnalysis):
    mode: Literal["image"] = "image"


class VideoAnalysis(BaseAnalysis):
    mode: Literal["video_transcript"] = "video_transcript"
    hook: Optional[HookAnalysis] = None
    persona: Optional[Persona] = None
    scores: Optional[Scores] = None
    transcript: Optional[str] = None
    speech_rejection: Optional[str] = None
    hook_validation: Optional[HookValidationResult] = None


AdAnalysis = Union[TextAnalysis, ImageAnalysis, VideoAnalysis]


class BatchSaveResult(BaseModel):
    success: int = 0
    failed: int = 0
    ad_ids: List[str] = Field(default_factory=list)
    brand_id: Optional[str] = None
    error: Optional[str] = None
