"""Single retrying, deadline-bound entry point for both LLM backends."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import httpx
from loguru import logger

from ..app.models import (
    AttemptError,
    CallAttempt,
    InputSummary,
    LLMRequestInfo,
    LLMResponseInfo,
    LLMTelemetry,
    ProviderInfo,
    TraceMessage,
)
from ..app.settings import Settings
from .exceptions import GenerationError
from .redaction import preview
from .trace import TraceRecorder, normalize_error

Messages = List[Dict[str, str]]


class EmptyResponseError(RuntimeError):
    error_type = "empty_response"


class InvalidResponseError(RuntimeError):
    error_type = "invalid_response"


@dataclass(frozen=True)
class Completion:
    text: str
    finish_reason: Optional[str] = None
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None
    request_id: Optional[str] = None


@dataclass(frozen=True)
class CallOptions:
    """Per-call overrides; unset values fall back to settings."""

    error_context: str
    label: Optional[str] = None
    timeout_seconds: Optional[float] = None
    max_retries: Optional[int] = None
    local_endpoint: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


@dataclass
class LocalStatus:
    endpoint: str
    available: bool
    model_installed: bool
    error: Optional[str] = None
    models: List[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "endpoint": self.endpoint,
            "available": self.available,
            "model_installed": self.model_installed,
            "error": self.error,
        }


class LLMBackend(Protocol):
    def provider_info(self) -> ProviderInfo: ...

    def provider_options(self) -> Optional[dict[str, Any]]: ...

    async def complete(
        self,
        messages: Messages,
        *,
        temperature: Optional[float],
        max_tokens: Optional[int],
        endpoint: Optional[str] = None,
    ) -> Completion: ...

    async def close(self) -> None: ...


def _request_id(response: httpx.Response) -> Optional[str]:
    return response.headers.get("x-request-id") or response.headers.get("request-id")


class CloudBackend:
    """OpenAI-compatible ``/chat/completions`` client."""

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> None:
        self._settings = settings
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self._settings.llm_api_key is not None:
                headers["Authorization"] = (
                    f"Bearer {self._settings.llm_api_key.get_secret_value()}"
                )
            self._client = httpx.AsyncClient(
                timeout=self._settings.llm_timeout_seconds, headers=headers
            )
        return self._client

    def provider_info(self) -> ProviderInfo:
        return ProviderInfo(
            id=self._settings.llm_provider, model=self._settings.llm_model, locality="cloud"
        )

    def provider_options(self) -> Optional[dict[str, Any]]:
        return None

    async def complete(
        self,
        messages: Messages,
        *,
        temperature: Optional[float],
        max_tokens: Optional[int],
        endpoint: Optional[str] = None,
    ) -> Completion:
        payload = {
            "model": self._settings.llm_model,
            "messages": messages,
            "temperature": self._settings.llm_temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self._settings.llm_max_tokens,
        }
        response = await self.client.post(
            f"{self._settings.llm_base_url}/chat/completions", json=payload
        )
        response.raise_for_status()
        data = response.json()
        try:
            choice = data["choices"][0]
            text = choice["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise InvalidResponseError(f"unexpected completion payload: {exc!r}") from exc
        usage = data.get("usage") or {}
        return Completion(
            text=text,
            finish_reason=choice.get("finish_reason"),
            tokens_in=usage.get("prompt_tokens"),
            tokens_out=usage.get("completion_tokens"),
            request_id=_request_id(response) or data.get("id"),
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class LocalBackend:
    """Non-streaming Ollama ``/api/chat`` client on its own connection pool."""

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> None:
        self._settings = settings
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._settings.llm_timeout_seconds,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    def provider_info(self) -> ProviderInfo:
        return ProviderInfo(id="ollama", model=self._settings.local_model, locality="local")

    def provider_options(self) -> Optional[dict[str, Any]]:
        return {"num_ctx": self._settings.local_context_length, "stream": False}

    async def complete(
        self,
        messages: Messages,
        *,
        temperature: Optional[float],
        max_tokens: Optional[int],
        endpoint: Optional[str] = None,
    ) -> Completion:
        base = (endpoint or self._settings.local_endpoint).rstrip("/")
        payload = {
            "model": self._settings.local_model,
            "messages": messages,
            "stream": False,
            "options": {
                "temperature": (
                    self._settings.local_temperature if temperature is None else temperature
                ),
                "num_predict": max_tokens or self._settings.local_max_tokens,
                "num_ctx": self._settings.local_context_length,
            },
        }
        response = await self.client.post(f"{base}/api/chat", json=payload)
        response.raise_for_status()
        data = response.json()
        message = data.get("message")
        if not isinstance(message, dict):
            raise InvalidResponseError("local response missing 'message'")
        return Completion(
            text=message.get("content") or "",
            finish_reason=data.get("done_reason"),
            tokens_in=data.get("prompt_eval_count"),
            tokens_out=data.get("eval_count"),
        )

    async def list_models(self, endpoint: Optional[str] = None) -> List[str]:
        base = (endpoint or self._settings.local_endpoint).rstrip("/")
        response = await self.client.get(f"{base}/api/tags")
        response.raise_for_status()
        return [entry.get("name", "") for entry in response.json().get("models", [])]

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class LLMGateway:
    """Routes every LLM call through one retry, deadline, and trace path."""

    def __init__(
        self,
        settings: Settings,
        *,
        cloud: Optional[LLMBackend] = None,
        local: Optional[LLMBackend] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._cloud = cloud or CloudBackend(settings)
        self._local = local or LocalBackend(settings)
        self._sleep = sleep

    def resolve_endpoint(self, options: CallOptions) -> Optional[str]:
        return options.local_endpoint or self._settings.active_local_endpoint()

    def provider_info(self, options: Optional[CallOptions] = None) -> ProviderInfo:
        endpoint = self.resolve_endpoint(options or CallOptions(error_context="probe"))
        return (self._local if endpoint else self._cloud).provider_info()

    async def call(
        self,
        system_prompt: str,
        user_prompt: str,
        options: CallOptions,
        *,
        trace: Optional[TraceRecorder] = None,
    ) -> str:
        """Return the trimmed model response or raise ``GenerationError``.

        Attempts are ``max_retries + 1``. Each attempt runs under its own
        deadline; timeouts, transport failures, HTTP errors, and empty
        responses all consume one attempt. Cancellation propagates at once.
        """
        endpoint = self.resolve_endpoint(options)
        backend = self._local if endpoint else self._cloud
        max_retries = (
            self._settings.llm_max_retries if options.max_retries is None else options.max_retries
        )
        timeout = options.timeout_seconds or self._settings.llm_timeout_seconds
        total_attempts = max(0, max_retries) + 1
        stage = options.error_context
        messages: Messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]

        attempts: List[CallAttempt] = []
        completion: Optional[Completion] = None
        last_error: Optional[AttemptError] = None
        last_exc: Optional[BaseException] = None
        call_started = time.perf_counter()

        for attempt in range(1, total_attempts + 1):
            if attempt > 1 and self._settings.llm_retry_backoff_seconds > 0:
                delay = self._settings.llm_retry_backoff_seconds * 2 ** (attempt - 2)
                logger.debug("{} retry {}/{} in {:.2f}s", stage, attempt - 1, max_retries, delay)
                await self._sleep(delay)

            started_at = _now_iso()
            attempt_started = time.perf_counter()
            try:
                result = await asyncio.wait_for(
                    backend.complete(
                        messages,
                        temperature=options.temperature,
                        max_tokens=options.max_tokens,
                        endpoint=endpoint,
                    ),
                    timeout=timeout,
                )
                if not result.text.strip():
                    raise EmptyResponseError("model returned an empty response")
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - every failure consumes one attempt
                error = self._classify(exc, timeout)
                attempts.append(
                    CallAttempt(
                        attempt=attempt,
                        started_at=started_at,
                        ended_at=_now_iso(),
                        latency_ms=_elapsed_ms(attempt_started),
                        error=error,
                    )
                )
                last_error, last_exc = error, exc
                logger.warning(
                    "{} attempt {}/{} failed ({}): {}",
                    stage,
                    attempt,
                    total_attempts,
                    error.type,
                    error.message,
                )
                continue

            attempts.append(
                CallAttempt(
                    attempt=attempt,
                    started_at=started_at,
                    ended_at=_now_iso(),
                    latency_ms=_elapsed_ms(attempt_started),
                )
            )
            completion = result
            break

        latency_ms = _elapsed_ms(call_started)
        if trace is not None:
            self._record(
                trace,
                backend=backend,
                options=options,
                messages=messages,
                max_retries=max_retries,
                completion=completion,
                attempts=attempts,
                latency_ms=latency_ms,
            )

        if completion is None:
            raise GenerationError(
                stage,
                last_error=last_error,
                attempts=len(attempts),
                timed_out=last_error is not None and last_error.type == "timeout",
            ) from last_exc

        logger.info(
            "{} completed via {} in {:.0f}ms after {} attempt(s)",
            stage,
            backend.provider_info().id,
            latency_ms,
            len(attempts),
        )
        return completion.text.strip()

    @staticmethod
    def _classify(exc: BaseException, timeout: float) -> AttemptError:
        if isinstance(exc, asyncio.TimeoutError):
            return AttemptError(type="timeout", message=f"no response within {timeout:g}s")
        error = normalize_error(exc)
        if isinstance(exc, httpx.TimeoutException):
            return error.model_copy(update={"type": "timeout"})
        if isinstance(exc, httpx.HTTPStatusError):
            return error.model_copy(update={"type": "http_status"})
        if isinstance(exc, httpx.TransportError):
            return error.model_copy(update={"type": "transport"})
        return error

    def _record(
        self,
        trace: TraceRecorder,
        *,
        backend: LLMBackend,
        options: CallOptions,
        messages: Messages,
        max_retries: int,
        completion: Optional[Completion],
        attempts: List[CallAttempt],
        latency_ms: float,
    ) -> None:
        preview_chars = self._settings.trace_preview_chars
        user_prompt = messages[-1]["content"]
        request = LLMRequestInfo(
            temperature=options.temperature,
            max_tokens=options.max_tokens,
            max_retries=max_retries,
            provider_options=backend.provider_options(),
            input_summary=InputSummary(
                message_count=len(messages),
                total_chars=sum(len(message["content"]) for message in messages),
                preview=preview(user_prompt, preview_chars),
            ),
            messages=[TraceMessage(role=m["role"], content=m["content"]) for m in messages],
        )
        text = completion.text if completion is not None else ""
        trace.llm_call(
            label=options.label or options.error_context,
            provider=backend.provider_info(),
            request=request,
            response=LLMResponseInfo(
                preview_text=preview(text, preview_chars),
                raw_text=text or None,
            ),
            telemetry=LLMTelemetry(
                latency_ms=latency_ms,
                finish_reason=completion.finish_reason if completion else None,
                tokens_in=completion.tokens_in if completion else None,
                tokens_out=completion.tokens_out if completion else None,
            ),
            attempts=attempts,
        )

    async def check_local_availability(self, endpoint: Optional[str] = None) -> LocalStatus:
        """Probe the local endpoint and report whether the configured model is installed."""
        target = endpoint or self._settings.local_endpoint
        list_models = getattr(self._local, "list_models", None)
        if list_models is None:
            return LocalStatus(endpoint=target, available=False, model_installed=False)
        try:
            models = await list_models(target)
        except httpx.HTTPError as exc:
            return LocalStatus(
                endpoint=target,
                available=False,
                model_installed=False,
                error=normalize_error(exc).message,
            )
        wanted = self._settings.local_model
        installed = any(name == wanted or name.split(":")[0] == wanted for name in models)
        return LocalStatus(
            endpoint=target, available=True, model_installed=installed, models=models
        )

    async def close(self) -> None:
        await self._cloud.close()
        await self._local.close()


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000.0, 3)
