"""Engine lookup and the execution boundary that turns errors into outcomes."""

from __future__ import annotations

import logging
from collections.abc import Mapping

import httpx

from mission_control.config import Settings
from mission_control.jobs.engines.base import EngineError, EngineRequest, JobEngine
from mission_control.jobs.engines.llm import (
    AnthropicEngine,
    GeminiEngine,
    OpenAIEngine,
    QuotaExhaustedError,
)
from mission_control.jobs.engines.shell import ShellEngine
from mission_control.jobs.models import Engine, EngineOutcome, OutcomeStatus

logger = logging.getLogger(__name__)


class EngineRegistry:
    """Map engine names to implementations."""

    def __init__(self, engines: Mapping[Engine, JobEngine]) -> None:
        self._engines = dict(engines)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> EngineRegistry:
        return cls(
            {
                Engine.SHELL: ShellEngine(),
                Engine.CLAUDE: AnthropicEngine(settings.llm.claude, transport=transport),
                Engine.OPENAI: OpenAIEngine(settings.llm.openai, transport=transport),
                Engine.GEMINI: GeminiEngine(settings.llm.gemini, transport=transport),
            },
        )

    def get(self, engine: Engine | str) -> JobEngine | None:
        try:
            key = Engine(engine)
        except ValueError:
            return None
        return self._engines.get(key)

    def execute(self, request: EngineRequest) -> EngineOutcome:
        """Run a request; engine errors become failed or quota-exhausted outcomes."""

        engine = self.get(request.engine)
        if engine is None:
            return EngineOutcome(
                status=OutcomeStatus.FAILED,
                error_summary=f"Unsupported engine: {Engine(request.engine).value}",
                raw={"ok": False, "error": "unsupported-engine"},
            )
        try:
            return engine.execute(request)
        except QuotaExhaustedError as error:
            logger.warning("Quota exhausted for job %s: %s", request.job_id, error)
            return EngineOutcome(
                status=OutcomeStatus.QUOTA_EXHAUSTED,
                error_summary=str(error),
                raw={"ok": False, "error": "quota-exhausted"},
            )
        except EngineError as error:
            logger.warning(
                "Engine %s failed for job %s (transient=%s): %s",
                request.engine.value,
                request.job_id,
                error.transient,
                error,
            )
            return EngineOutcome(
                status=OutcomeStatus.FAILED,
                error_summary=str(error),
                raw={"ok": False, "error": str(error), "transient": error.transient},
            )

    def close(self) -> None:
        for engine in self._engines.values():
            close = getattr(engine, "close", None)
            if callable(close):
                close()
