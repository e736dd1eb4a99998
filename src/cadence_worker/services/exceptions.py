"""Shared service-layer exceptions."""

from __future__ import annotations

from typing import Optional

from ..app.models import AttemptError, TraceRun


class CadenceError(Exception):
    """Base class for failures surfaced to callers of the engine."""

    kind = "error"
    # Finalized trace of the failed run, attached when tracing was requested.
    trace: Optional[TraceRun] = None


class ValidationError(CadenceError):
    """Contradictory or malformed request input. Never retried."""

    kind = "invalid_input"

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class GenerationError(CadenceError):
    """An LLM stage exhausted its retry budget or produced unusable output."""

    kind = "generation"

    def __init__(
        self,
        stage: str,
        *,
        last_error: Optional[AttemptError] = None,
        attempts: int = 0,
        timed_out: bool = False,
    ) -> None:
        detail = f"{last_error.type}: {last_error.message}" if last_error else "no response"
        super().__init__(f"{stage} failed after {attempts} attempt(s) ({detail})")
        self.stage = stage
        self.last_error = last_error
        self.attempts = attempts
        self.timed_out = timed_out


class ParseError(CadenceError):
    """LLM output did not match the expected structured shape."""

    kind = "parse"

    def __init__(self, stage: str, message: str, *, raw_preview: str = "") -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.raw_preview = raw_preview


class InvariantError(CadenceError):
    """Internal precondition violated; indicates a programming error."""

    kind = "invariant"
