"""Structured per-request trace log with a hard persisted-size budget."""

from __future__ import annotations

import asyncio
import json
import time
from datetime import UTC, datetime
from typing import Any, Callable, List, Optional, Sequence, Tuple
from uuid import uuid4

from loguru import logger

from ..app.models import (
    AttemptError,
    CallAttempt,
    DecisionDomain,
    DecisionEvent,
    ErrorEvent,
    LLMCallEvent,
    LLMRequestInfo,
    LLMResponseInfo,
    LLMTelemetry,
    ProviderInfo,
    RunEvent,
    SelectionDetails,
    TraceErrorInfo,
    TraceEvent,
    TraceRng,
    TraceRun,
    TraceStats,
)
from .exceptions import CadenceError, GenerationError, InvariantError
from .redaction import redact_deep, redact_text, truncate_with_marker
from .rng import RNG_ALGORITHM

TRACE_CAP_BYTES = 64 * 1024
ERROR_MESSAGE_LIMIT = 500

_PERSISTED_BYTES_PASSES = 6
_PRIMARY_LIMITS = (300, 120)
_SECONDARY_LIMITS = (120, 40, 16, 0)

# (event type, attribute path) pairs holding free text that compaction may shorten.
_PRIMARY_TEXT_FIELDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("llm.call", ("response", "preview_text")),
    ("llm.call", ("request", "input_summary", "preview")),
    ("decision", ("why",)),
    ("run.start", ("summary",)),
)
_SECONDARY_TEXT_FIELDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = _PRIMARY_TEXT_FIELDS + (
    ("decision", ("branch_taken",)),
    ("decision", ("key",)),
    ("llm.call", ("label",)),
    ("error", ("error", "message")),
)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def normalize_error(exc: BaseException) -> AttemptError:
    """Collapse any exception into the trace/error shape, secrets scrubbed."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        error_type = "timeout"
    elif isinstance(exc, CadenceError):
        error_type = exc.kind
    else:
        error_type = getattr(exc, "error_type", None) or type(exc).__name__

    status: Optional[int] = None
    request_id: Optional[str] = None
    response = getattr(exc, "response", None)
    if response is not None:
        status = getattr(response, "status_code", None) or getattr(response, "status", None)
        headers = getattr(response, "headers", None)
        if headers is not None:
            request_id = headers.get("x-request-id") or headers.get("request-id")
    if status is None:
        status = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    if request_id is None:
        request_id = getattr(exc, "request_id", None)

    message = str(exc) or type(exc).__name__
    return AttemptError(
        type=error_type,
        message=truncate_with_marker(redact_text(message), ERROR_MESSAGE_LIMIT),
        http_status=int(status) if isinstance(status, int) else None,
        provider_request_id=str(request_id) if request_id else None,
    )


class TraceRecorder:
    """Collects events for a single request and finalizes them exactly once."""

    def __init__(
        self,
        *,
        seed: int,
        action: str = "generate",
        algorithm: str = RNG_ALGORITHM,
        run_id: Optional[str] = None,
        cap_bytes: int = TRACE_CAP_BYTES,
    ) -> None:
        self.run_id = run_id or uuid4().hex[:12]
        self._action = action
        self._rng = TraceRng(seed=seed, algorithm=algorithm)
        self._cap_bytes = cap_bytes
        self._started_at = _now_iso()
        self._t0 = time.perf_counter()
        self._counter = 0
        self._events: List[TraceEvent] = []
        self._had_errors = False
        self._finalized: Optional[TraceRun] = None

    @property
    def finalized(self) -> bool:
        return self._finalized is not None

    @property
    def events(self) -> Sequence[TraceEvent]:
        return tuple(self._events)

    def stamp(self) -> dict[str, Any]:
        """Identity and timing fields for the next event."""
        self._counter += 1
        return {
            "id": f"{self.run_id}.{self._counter}",
            "ts": _now_iso(),
            "t_ms": round((time.perf_counter() - self._t0) * 1000.0, 3),
        }

    def add_event(self, event: TraceEvent) -> None:
        if self._finalized is not None:
            raise InvariantError("trace run already finalized")
        scrubbed = type(event).model_validate(redact_deep(event.model_dump()))
        if isinstance(scrubbed, ErrorEvent):
            self._had_errors = True
        self._events.append(scrubbed)

    def run_start(self, summary: str) -> None:
        self.add_event(RunEvent(**self.stamp(), type="run.start", summary=summary))

    def run_end(self, summary: str) -> None:
        self.add_event(RunEvent(**self.stamp(), type="run.end", summary=summary))

    def decision(
        self,
        domain: DecisionDomain,
        key: str,
        branch_taken: str,
        *,
        why: str = "",
        selection: Optional[SelectionDetails] = None,
    ) -> None:
        self.add_event(
            DecisionEvent(
                **self.stamp(),
                domain=domain,
                key=key,
                branch_taken=branch_taken,
                why=why,
                selection=selection,
            )
        )

    def llm_call(
        self,
        *,
        label: str,
        provider: ProviderInfo,
        request: LLMRequestInfo,
        response: LLMResponseInfo,
        telemetry: LLMTelemetry,
        attempts: Sequence[CallAttempt],
    ) -> None:
        self.add_event(
            LLMCallEvent(
                **self.stamp(),
                label=label,
                provider=provider,
                request=request,
                response=response,
                telemetry=telemetry,
                attempts=list(attempts),
            )
        )

    def error(self, exc: BaseException) -> None:
        normalized = normalize_error(exc)
        if isinstance(exc, GenerationError) and exc.last_error is not None:
            normalized = normalized.model_copy(
                update={
                    "http_status": exc.last_error.http_status,
                    "provider_request_id": exc.last_error.provider_request_id,
                }
            )
        self.add_event(
            ErrorEvent(
                **self.stamp(),
                error=TraceErrorInfo(
                    type=normalized.type,
                    message=normalized.message,
                    status=normalized.http_status,
                    provider_request_id=normalized.provider_request_id,
                ),
            )
        )

    def finalize(self) -> TraceRun:
        """Apply the size cap once; later calls return the same run."""
        if self._finalized is not None:
            return self._finalized
        run = TraceRun(
            run_id=self.run_id,
            action=self._action,
            started_at=self._started_at,
            rng=self._rng,
            events=list(self._events),
        )
        self._finalized = enforce_trace_cap(run, self._cap_bytes, had_errors=self._had_errors)
        return self._finalized


def serialize_trace(run: TraceRun) -> bytes:
    """Compact UTF-8 JSON of ``run``; the exact bytes the size cap applies to."""
    return run.model_dump_json(exclude_none=True).encode("utf-8")


def _byte_size(run: TraceRun) -> int:
    return len(serialize_trace(run))


def _text_bytes(value: str) -> int:
    return len(json.dumps(value, ensure_ascii=False).encode("utf-8"))


def _event_bytes(event: TraceEvent) -> int:
    # Plus one for the comma separating it from its neighbour.
    return len(event.model_dump_json(exclude_none=True).encode("utf-8")) + 1


def _with_stats(run: TraceRun, *, had_errors: bool, truncated: bool) -> TraceRun:
    """Recompute stats, resolving ``persisted_bytes`` as a fixed point."""
    events = run.events
    stats = TraceStats(
        event_count=len(events),
        llm_call_count=sum(1 for event in events if event.type == "llm.call"),
        decision_count=sum(1 for event in events if event.type == "decision"),
        had_errors=had_errors or any(event.type == "error" for event in events),
        truncated_for_cap=truncated,
    )
    measured = run
    size = 0
    for _ in range(_PERSISTED_BYTES_PASSES):
        measured = run.model_copy(
            update={"stats": stats.model_copy(update={"persisted_bytes": size})}
        )
        actual = _byte_size(measured)
        if actual == size:
            break
        size = actual
    return measured


def _get_path(event: TraceEvent, path: Tuple[str, ...]) -> Any:
    value: Any = event
    for attr in path:
        value = getattr(value, attr)
    return value


def _set_path(model: Any, path: Tuple[str, ...], value: Any) -> Any:
    head = path[0]
    if len(path) == 1:
        return model.model_copy(update={head: value})
    return model.model_copy(update={head: _set_path(getattr(model, head), path[1:], value)})


def _strip_advanced(event: LLMCallEvent) -> LLMCallEvent:
    return event.model_copy(
        update={
            "request": event.request.model_copy(update={"messages": None}),
            "response": event.response.model_copy(update={"raw_text": None}),
        }
    )


def _strip_attempts(event: LLMCallEvent) -> LLMCallEvent:
    return event.model_copy(
        update={
            "attempts": None,
            "request": event.request.model_copy(update={"provider_options": None}),
        }
    )


def _strip_selection(event: DecisionEvent) -> DecisionEvent:
    return event.model_copy(update={"selection": None})


class _Compactor:
    """Applies compaction steps in order until the run fits the budget.

    Within a step, edits subtract their own serialized savings from a running
    excess and the whole run is only re-measured once that estimate reaches
    zero, so a step costs a handful of full serializations rather than one
    per edited field.
    """

    def __init__(self, run: TraceRun, cap_bytes: int, had_errors: bool) -> None:
        self.events: List[TraceEvent] = list(run.events)
        self._base = run
        self._cap = cap_bytes
        self._had_errors = had_errors
        self._size = 0

    def build(self) -> TraceRun:
        run = self._base.model_copy(update={"events": list(self.events)})
        return _with_stats(run, had_errors=self._had_errors, truncated=True)

    def fits(self) -> bool:
        self._size = self.build().stats.persisted_bytes
        return self._size <= self._cap

    @property
    def excess(self) -> int:
        return self._size - self._cap

    def run(self) -> TraceRun:
        if self.fits():
            return self.build()
        steps = (
            self._drop_advanced_fields,
            self._drop_run_end,
            self._compact_previews,
            self._drop_attempts,
            self._drop_selection_details,
            self._compact_all_text,
            self._drop_error_events,
            self._prune_decisions,
            self._prune_llm_calls,
        )
        for step in steps:
            step()
            if self.fits():
                break
        return self.build()

    def _map_events(self, event_type: str, transform: Callable[[Any], Any]) -> None:
        self.events = [
            transform(event) if event.type == event_type else event for event in self.events
        ]

    def _drop_advanced_fields(self) -> None:
        self._map_events("llm.call", _strip_advanced)

    def _drop_run_end(self) -> None:
        self.events = [event for event in self.events if event.type != "run.end"]

    def _compact_previews(self) -> None:
        self._compact_text(_PRIMARY_TEXT_FIELDS, _PRIMARY_LIMITS)

    def _drop_attempts(self) -> None:
        self._map_events("llm.call", _strip_attempts)

    def _drop_selection_details(self) -> None:
        self._map_events("decision", _strip_selection)

    def _compact_all_text(self) -> None:
        self._compact_text(_SECONDARY_TEXT_FIELDS, _SECONDARY_LIMITS)

    def _drop_error_events(self) -> None:
        self.events = [event for event in self.events if event.type != "error"]

    def _prune_decisions(self) -> None:
        self._prune_newest("decision")

    def _prune_llm_calls(self) -> None:
        self._prune_newest("llm.call")

    def _compact_text(
        self,
        fields: Tuple[Tuple[str, Tuple[str, ...]], ...],
        limits: Tuple[int, ...],
    ) -> None:
        excess = self.excess
        for limit in limits:
            candidates = []
            for index, event in enumerate(self.events):
                for event_type, path in fields:
                    if event.type != event_type:
                        continue
                    value = _get_path(event, path)
                    if isinstance(value, str) and len(value) > limit:
                        candidates.append((len(value), index, path))
            # Largest fields first so a single oversized payload is cut before anything else.
            candidates.sort(key=lambda item: (-item[0], item[1]))
            for _, index, path in candidates:
                value = _get_path(self.events[index], path)
                shortened = truncate_with_marker(value, limit)
                self.events[index] = _set_path(self.events[index], path, shortened)
                excess -= _text_bytes(value) - _text_bytes(shortened)
                if excess <= 0:
                    if self.fits():
                        return
                    excess = self.excess

    def _prune_newest(self, event_type: str) -> None:
        excess = self.excess
        index = len(self.events) - 1
        while index >= 0 and excess > 0:
            if self.events[index].type == event_type:
                excess -= _event_bytes(self.events[index])
                del self.events[index]
                if excess <= 0:
                    if self.fits():
                        return
                    excess = self.excess
            index -= 1


def enforce_trace_cap(
    run: TraceRun, cap_bytes: int = TRACE_CAP_BYTES, *, had_errors: bool = False
) -> TraceRun:
    """Shrink ``run`` until its compact JSON fits in ``cap_bytes``.

    Steps run in order and stop as soon as the run fits: advanced LLM fields,
    ``run.end`` events, preview and reason text, attempt lists and provider
    options, selection details, all remaining text, error events. Decisions
    and then LLM calls are pruned only when their bare skeletons alone exceed
    the budget.
    """
    measured = _with_stats(run, had_errors=had_errors, truncated=False)
    if measured.stats.persisted_bytes <= cap_bytes:
        return measured

    capped = _Compactor(run, cap_bytes, measured.stats.had_errors).run()
    if capped.stats.persisted_bytes > cap_bytes:  # pragma: no cover - skeleton larger than cap
        logger.warning(
            "trace {} still {} bytes after compaction (cap {})",
            run.run_id,
            capped.stats.persisted_bytes,
            cap_bytes,
        )
    return capped
