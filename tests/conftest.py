from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple, Union

import pytest

from cadence_worker.app.models import ProviderInfo
from cadence_worker.app.settings import Settings
from cadence_worker.services.exceptions import GenerationError
from cadence_worker.services.llm import CallOptions, LocalStatus
from cadence_worker.services.trace import TraceRecorder

Reply = Union[str, Exception]


class ScriptedGateway:
    """Replays scripted replies keyed by error context instead of calling a model."""

    def __init__(
        self,
        replies: Optional[Dict[str, Sequence[Reply]]] = None,
        default: Reply = "Scripted Reply",
    ) -> None:
        self._replies: Dict[str, List[Reply]] = {
            key: list(values) for key, values in (replies or {}).items()
        }
        self._default = default
        self.calls: List[Tuple[str, str, CallOptions]] = []
        self.closed = False

    @property
    def contexts(self) -> List[str]:
        return [options.error_context for _, _, options in self.calls]

    async def call(
        self,
        system_prompt: str,
        user_prompt: str,
        options: CallOptions,
        *,
        trace: Optional[TraceRecorder] = None,
    ) -> str:
        self.calls.append((system_prompt, user_prompt, options))
        queue = self._replies.get(options.error_context)
        reply = queue.pop(0) if queue else self._default
        if isinstance(reply, Exception):
            raise reply
        return reply

    def provider_info(self, options: Optional[CallOptions] = None) -> ProviderInfo:
        return ProviderInfo(id="scripted", model="scripted-model", locality="cloud")

    async def check_local_availability(self, endpoint: Optional[str] = None) -> LocalStatus:
        return LocalStatus(endpoint=endpoint or "", available=False, model_installed=False)

    async def close(self) -> None:
        self.closed = True


def generation_failure(stage: str) -> GenerationError:
    return GenerationError(stage, attempts=3)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        llm_retry_backoff_seconds=0.0,
        llm_max_retries=2,
        trace_enabled=False,
        use_local_llm=False,
        max_prompt_chars=1000,
    )
