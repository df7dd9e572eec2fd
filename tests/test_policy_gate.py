from __future__ import annotations

import itertools
from types import MappingProxyType

import pytest

from config.settings import SIGNAL_KEYS, CostConfig, GammaConfig
from policy.gate import GammaEvidence, PolicyEngine


def _all_evidence():
    for bits in itertools.product((0, 1), repeat=len(SIGNAL_KEYS)):
        yield GammaEvidence(**dict(zip(SIGNAL_KEYS, bits)))


def test_score_matches_weighted_sum(policy: PolicyEngine) -> None:
    ev = GammaEvidence(tests_pass=1, retrieval_cited=0, cost_ok=1, diff_tiny=1)
    assert policy.score(ev) == 0.75


def test_safe_mode_commits_at_075(policy: PolicyEngine) -> None:
    ev = GammaEvidence(tests_pass=1, retrieval_cited=0, cost_ok=1, diff_tiny=1)
    decision = policy.decide(ev, mode="safe", estimated_cost=0.02)
    assert decision.threshold == 0.6
    assert decision.passed
    assert decision.commit


def test_higher_threshold_defers_same_evidence() -> None:
    strict = PolicyEngine(
        gamma=GammaConfig(thresholds=MappingProxyType({"fast": 0.5, "strict": 0.8})),
        cost=CostConfig(),
    )
    ev = GammaEvidence(tests_pass=1, retrieval_cited=0, cost_ok=1, diff_tiny=1)
    decision = strict.decide(ev, mode="strict", estimated_cost=0.02)
    assert decision.gamma == 0.75
    assert not decision.passed
    assert not decision.commit


def test_score_is_bounded_for_every_evidence_vector(policy: PolicyEngine) -> None:
    for ev in _all_evidence():
        assert 0.0 <= policy.score(ev) <= 1.0


def test_score_is_monotonic_in_each_signal(policy: PolicyEngine) -> None:
    for ev in _all_evidence():
        base = policy.score(ev)
        for k in SIGNAL_KEYS:
            if getattr(ev, k) == 0:
                flipped = GammaEvidence(**{**ev.as_dict(), k: 1})
                assert policy.score(flipped) >= base


def test_unknown_mode_falls_back_to_fast(policy: PolicyEngine) -> None:
    assert policy.threshold("unknown-mode") == policy.threshold("fast") == 0.5


def test_cost_gate_within_ceiling(policy: PolicyEngine) -> None:
    res = policy.cost_gate(0.02)
    assert res.ok
    assert res.ceiling == 3.0
    assert res.estimated == 0.02


def test_cost_over_ceiling_blocks_commit_even_with_full_gamma(policy: PolicyEngine) -> None:
    ev = GammaEvidence(tests_pass=1, retrieval_cited=1, cost_ok=1, diff_tiny=1)
    decision = policy.decide(ev, mode="cheap", estimated_cost=5.0)
    assert decision.passed
    assert not decision.cost.ok
    assert not decision.commit


def test_evidence_coerces_truthy_values() -> None:
    ev = GammaEvidence.from_mapping({"tests_pass": True, "retrieval_cited": 7, "cost_ok": None})
    assert ev.as_dict() == {"tests_pass": 1, "retrieval_cited": 1, "cost_ok": 0, "diff_tiny": 0}


@pytest.mark.parametrize("spent, left", [(0.0, 25.0), (24.5, 0.5), (30.0, 0.0)])
def test_daily_budget_left(policy: PolicyEngine, spent: float, left: float) -> None:
    assert policy.daily_budget_left(spent) == pytest.approx(left)
