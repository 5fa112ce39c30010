# assetflow/errors.py
"""
Error taxonomy for the ingestion pipeline.

 - FatalExtractionError: input content breaks parsing; the job is marked failed
 - RecoverableSubstepFailure: a best-effort step failed and was defaulted
 - InfrastructureError: queue / storage / render capability problems
 - NotFoundError: requested asset or artifact is absent (maps to a 404)

Best-effort steps (favicon fetch, tag generation) go through `best_effort`,
which turns any exception into a `StepOutcome` carrying the default value.
"""
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class AssetflowError(Exception):
    kind = "error"


class FatalExtractionError(AssetflowError):
    kind = "fatal"


class RecoverableSubstepFailure(AssetflowError):
    kind = "recoverable"

    def __init__(self, step: str, cause: BaseException):
        super().__init__(f"{step} failed: {cause}")
        self.step = step
        self.cause = cause


class InfrastructureError(AssetflowError):
    kind = "infrastructure"


class NotFoundError(AssetflowError):
    kind = "not_found"
    code = "NOT_FOUND"


class StaleJobError(AssetflowError):
    """Raised when a worker writes with a generation that is no longer current."""
    kind = "stale"

    def __init__(self, asset_type: str, asset_id: str, generation: int, current: int):
        super().__init__(
            f"stale job for {asset_type}/{asset_id}: generation {generation} != current {current}"
        )
        self.generation = generation
        self.current = current


class InvalidStageTransition(AssetflowError, ValueError):
    kind = "invalid_transition"


class ServiceError(AssetflowError):
    """Caller-safe error re-raised by service functions; details stay in the logs."""
    kind = "service"


@dataclass
class StepOutcome(Generic[T]):
    value: T
    error: Optional[AssetflowError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> str:
        return "ok" if self.error is None else self.error.kind


async def best_effort(
    step: str,
    fn: Callable[[], Awaitable[T]],
    default: T,
    log_context: Optional[Dict[str, Any]] = None,
) -> StepOutcome[T]:
    """
    Run `fn` and degrade to `default` on any exception.
    The failure is logged at warning level and returned as a RecoverableSubstepFailure.
    """
    try:
        return StepOutcome(await fn())
    except Exception as e:
        logger.warning("Best-effort step %s failed %s: %s", step, log_context or {}, e)
        return StepOutcome(default, RecoverableSubstepFailure(step, e))
