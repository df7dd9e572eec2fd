"""Quality gate (gamma) and cost gate.

The engine is a pure function of its frozen configuration: it holds no
mutable state and is safe to call concurrently from any number of callers.

    gamma     = round(sum(weight[k] * evidence[k]), 3)   over the four signals
    threshold = thresholds[mode], falling back to thresholds["fast"]
    commit    = gamma >= threshold and cost.ok

A failing gate is not an error: callers turn it into a Defer outcome.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Mapping

from config.settings import SIGNAL_KEYS, CostConfig, GammaConfig

FALLBACK_MODE = "fast"


def _bit(v: Any) -> int:
    return 1 if v else 0


@dataclass(frozen=True)
class GammaEvidence:
    tests_pass: int = 0
    retrieval_cited: int = 0
    cost_ok: int = 0
    diff_tiny: int = 0

    def __post_init__(self) -> None:
        # Signals are boolean-valued; coerce truthy inputs to 1 and falsy to 0.
        for k in SIGNAL_KEYS:
            object.__setattr__(self, k, _bit(getattr(self, k)))

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "GammaEvidence":
        return cls(**{k: raw.get(k, 0) for k in SIGNAL_KEYS})

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class CostDecision:
    ok: bool
    ceiling: float
    estimated: float

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class GateDecision:
    gamma: float
    threshold: float
    passed: bool
    cost: CostDecision

    @property
    def commit(self) -> bool:
        return self.passed and self.cost.ok

    def as_dict(self) -> dict[str, Any]:
        return {
            "gamma": self.gamma,
            "threshold": self.threshold,
            "passed": self.passed,
            "cost": self.cost.as_dict(),
            "commit": self.commit,
        }


class PolicyEngine:
    def __init__(self, *, gamma: GammaConfig, cost: CostConfig):
        self._gamma = gamma
        self._cost = cost

    @property
    def gamma_config(self) -> GammaConfig:
        return self._gamma

    @property
    def cost_config(self) -> CostConfig:
        return self._cost

    def score(self, evidence: GammaEvidence) -> float:
        w = self._gamma.weights
        total = sum(float(w[k]) * getattr(evidence, k) for k in SIGNAL_KEYS)
        return round(total, 3)

    def threshold(self, mode: str) -> float:
        thresholds = self._gamma.thresholds
        if mode in thresholds:
            return float(thresholds[mode])
        return float(thresholds[FALLBACK_MODE])

    def cost_gate(self, estimated_cost: float) -> CostDecision:
        ceiling = self._cost.per_run_ceiling
        return CostDecision(ok=estimated_cost <= ceiling, ceiling=ceiling, estimated=estimated_cost)

    def daily_budget_left(self, spent_today: float) -> float:
        return max(0.0, self._cost.per_day_ceiling - spent_today)

    def decide(self, evidence: GammaEvidence, *, mode: str, estimated_cost: float) -> GateDecision:
        gamma = self.score(evidence)
        threshold = self.threshold(mode)
        return GateDecision(gamma=gamma, threshold=threshold, passed=gamma >= threshold, cost=self.cost_gate(estimated_cost))
