from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class VibeCategory(str, Enum):
    LOFI_STUDY = "lofi-study"
    CAFE_COFFEESHOP = "cafe-coffeeshop"
    AMBIENT_FOCUS = "ambient-focus"
    LATENIGHT_CHILL = "latenight-chill"
    COZY_RAINY = "cozy-rainy"
    LOFI_CHILL = "lofi-chill"


class GenerationRequest(BaseModel):
    """User inputs for one generation or refinement call.

    Mode exclusivity is checked by ``resolve_mode`` rather than by field
    validation so that contradictory requests surface as the service-level
    ``ValidationError`` instead of a schema error.
    """

    model_config = ConfigDict(frozen=True)

    style_tags: list[str] = Field(default_factory=list)
    seed_genres: list[str] = Field(default_factory=list)
    category: Optional[VibeCategory] = None
    description: str = Field(default="", max_length=4000)
    feedback_text: str = Field(default="", max_length=4000)
    lyrics_topic: str = Field(default="", max_length=500)
    max_mode: bool = False
    with_lyrics: bool = False
    with_wordless_vocals: bool = False
    use_extended_tags: bool = False
    target_genre_count: Optional[int] = None


@dataclass(frozen=True)
class DirectMode:
    styles: tuple[str, ...]


@dataclass(frozen=True)
class CategoryMode:
    category: VibeCategory


@dataclass(frozen=True)
class CustomMode:
    description: str
    seed_genres: tuple[str, ...] = ()
    target_genre_count: Optional[int] = None


RequestMode = Union[DirectMode, CategoryMode, CustomMode]

RemixField = Literal["genre", "mood", "instruments", "style_tags", "recording"]


class _TraceModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class AttemptError(_TraceModel):
    type: str
    message: str
    http_status: Optional[int] = None
    provider_request_id: Optional[str] = None


class CallAttempt(_TraceModel):
    attempt: int = Field(..., ge=1)
    started_at: str
    ended_at: str
    latency_ms: float = Field(..., ge=0.0)
    error: Optional[AttemptError] = None


class ProviderInfo(_TraceModel):
    id: str
    model: str
    locality: Literal["cloud", "local"]


class TraceMessage(_TraceModel):
    role: Literal["system", "user", "assistant"]
    content: str


class InputSummary(_TraceModel):
    message_count: int
    total_chars: int
    preview: str


class LLMRequestInfo(_TraceModel):
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    max_retries: int = 0
    provider_options: Optional[dict[str, Any]] = None
    input_summary: InputSummary
    messages: Optional[list[TraceMessage]] = None


class LLMResponseInfo(_TraceModel):
    preview_text: str = ""
    raw_text: Optional[str] = None


class LLMTelemetry(_TraceModel):
    latency_ms: float = 0.0
    finish_reason: Optional[str] = None
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None


class SelectionDetails(_TraceModel):
    method: Literal["weighted_pool", "pick_random", "shuffle_slice"]
    chosen_index: Optional[int] = None
    candidates_count: int = 0
    candidates_preview: list[str] = Field(default_factory=list)
    rolls: list[float] = Field(default_factory=list)


class TraceErrorInfo(_TraceModel):
    type: str
    message: str
    status: Optional[int] = None
    provider_request_id: Optional[str] = None


class _EventBase(_TraceModel):
    id: str
    ts: str
    t_ms: float


class RunEvent(_EventBase):
    type: Literal["run.start", "run.end"]
    summary: str = ""


DecisionDomain = Literal[
    "mode",
    "genre",
    "mood",
    "instruments",
    "bpm",
    "time_signature",
    "chord_progression",
    "production",
    "title",
    "lyrics",
    "postprocess",
    "other",
]


class DecisionEvent(_EventBase):
    type: Literal["decision"] = "decision"
    domain: DecisionDomain
    key: str
    branch_taken: str
    why: str = ""
    selection: Optional[SelectionDetails] = None


class LLMCallEvent(_EventBase):
    type: Literal["llm.call"] = "llm.call"
    label: str
    provider: ProviderInfo
    request: LLMRequestInfo
    response: LLMResponseInfo
    telemetry: LLMTelemetry
    attempts: Optional[list[CallAttempt]] = None


class ErrorEvent(_EventBase):
    type: Literal["error"] = "error"
    error: TraceErrorInfo


TraceEvent = Annotated[
    Union[RunEvent, DecisionEvent, LLMCallEvent, ErrorEvent],
    Field(discriminator="type"),
]


class TraceRng(_TraceModel):
    seed: int
    algorithm: str


class TraceStats(_TraceModel):
    event_count: int = 0
    llm_call_count: int = 0
    decision_count: int = 0
    had_errors: bool = False
    persisted_bytes: int = 0
    truncated_for_cap: bool = False


class TraceRun(_TraceModel):
    version: int = 1
    run_id: str
    action: Literal["generate", "refine", "remix"]
    started_at: str
    rng: TraceRng
    events: list[TraceEvent] = Field(default_factory=list)
    stats: TraceStats = Field(default_factory=TraceStats)

    @property
    def seed(self) -> int:
        return self.rng.seed


class GenerationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    title: Optional[str] = None
    lyrics: Optional[str] = None
    trace: Optional[TraceRun] = None


class GenerateBody(BaseModel):
    request: GenerationRequest
    trace: bool = False
    seed: Optional[int] = Field(default=None, ge=0, le=0xFFFFFFFF)


class RefineBody(BaseModel):
    prior: GenerationResult
    feedback: str = Field(default="", max_length=4000)
    request: GenerationRequest
    trace: bool = False


class RemixBody(BaseModel):
    prior: GenerationResult
    field: RemixField
    target_genre_count: Optional[int] = Field(default=None, ge=1, le=4)
    trace: bool = False
    seed: Optional[int] = Field(default=None, ge=0, le=0xFFFFFFFF)
