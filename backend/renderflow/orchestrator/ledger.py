"""Cost and artifact ledger for a single run execution."""

import logging
from typing import Any, Dict, Optional

from renderflow.orchestrator.state import RunStep
from renderflow.schemas.run_state import CostEstimate

logger = logging.getLogger(__name__)

STEP_COST_DIGITS = 6


class ArtifactLedger:
    """Accumulates provider spend per step and the run's artifact keys.

    Artifact keys are additive: record() may overwrite a value but nothing
    ever removes a key. Spend carried over from earlier attempts (the stored
    costEstimate.byStep) is kept, so a retried run reports its total spend.
    """

    def __init__(self, artifacts: Optional[Dict[str, Any]] = None):
        self._artifacts: Dict[str, Any] = dict(artifacts or {})
        self._costs: Dict[str, float] = {}

        previous = self._artifacts.get("costEstimate")
        if isinstance(previous, dict):
            by_step = previous.get("byStep")
            if isinstance(by_step, dict):
                for step, usd in by_step.items():
                    if isinstance(usd, (int, float)):
                        self._costs[step] = float(usd)

    def add_cost(self, step: RunStep, usd: float) -> None:
        if usd < 0:
            raise ValueError(f"Negative cost for {step.value}: {usd}")
        self._costs[step.value] = self._costs.get(step.value, 0.0) + usd
        logger.debug(f"Cost {step.value}: +${usd:.4f}")

    @property
    def total_usd(self) -> float:
        return sum(self._costs.values())

    def cost_estimate(self) -> CostEstimate:
        """Total spend rounded to cents; per-step spend to STEP_COST_DIGITS."""
        return CostEstimate(
            estimated_usd=round(self.total_usd, 2),
            by_step={step: round(usd, STEP_COST_DIGITS) for step, usd in self._costs.items()},
        )

    def record(self, key: str, value: Any) -> None:
        self._artifacts[key] = value

    def record_cost_estimate(self) -> None:
        self.record("costEstimate", self.cost_estimate().model_dump(by_alias=True))

    def get(self, key: str, default: Any = None) -> Any:
        return self._artifacts.get(key, default)

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._artifacts)
