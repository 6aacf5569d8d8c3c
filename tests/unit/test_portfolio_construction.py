"""
Tests for portfolio construction.

Covers correlation, decorrelation, risk parity, regime routing,
synthesis and the end-to-end construction run.
"""

import json
import math
import pytest
import numpy as np

from src.config import PortfolioConfig
from src.exceptions import InvariantViolation
from src.portfolio import (
    CorrelationEntry,
    CorrelationMatrix,
    DecorrelationFilter,
    PortfolioConstructor,
    RiskParityWeighter,
    StrategyStream,
    Synthesizer,
)
from src.regime import Regime, RegimeAffinity, RegimeRouter
from src.regime.router import check_weights_sum


def random_returns(seed, n=200, scale=0.01):
    rng = np.random.RandomState(seed)
    return list(rng.randn(n) * scale)


def stream_from_returns(make_curve, sid, returns, sharpe=None, affinity=None):
    return StrategyStream.from_curve(
        id=sid,
        name=sid,
        curve=make_curve(returns),
        affinity=affinity,
        sharpe=sharpe,
    )


class TestCorrelationMatrix:
    """Tests for Pearson correlation."""

    def test_identical_series_correlate_fully(self):
        """Test identical series give 1.0."""
        series = [0.01, -0.02, 0.03, 0.0, 0.015, -0.01, 0.02, -0.005, 0.01, 0.004]

        assert CorrelationMatrix().pearson(series, series) == pytest.approx(1.0)

    def test_inverted_series_correlate_negatively(self):
        """Test mirrored series give -1.0."""
        series = random_returns(1, n=50)
        inverted = [-r for r in series]

        assert CorrelationMatrix().pearson(series, inverted) == pytest.approx(-1.0)

    def test_below_minimum_observations_is_zero(self):
        """Test fewer than 10 observations returns 0."""
        series = [0.01, -0.02, 0.03, 0.0, 0.015, -0.01, 0.02, -0.005, 0.01]

        assert len(series) == 9
        assert CorrelationMatrix().pearson(series, series) == 0.0

    def test_zero_variance_is_zero_not_nan(self):
        """Test a flat series returns 0 instead of NaN."""
        flat = [0.0] * 30
        other = random_returns(2, n=30)

        result = CorrelationMatrix().pearson(flat, other)

        assert result == 0.0
        assert not math.isnan(result)

    def test_non_finite_input_is_zero(self):
        """Test NaN in a series returns 0."""
        series = random_returns(3, n=20)
        broken = list(series)
        broken[5] = float("nan")

        assert CorrelationMatrix().pearson(series, broken) == 0.0

    def test_common_prefix_is_used(self):
        """Test series of different lengths compare over the shorter one."""
        base = random_returns(4, n=12)
        longer = base + random_returns(5, n=30)

        assert CorrelationMatrix().pearson(base, longer) == pytest.approx(1.0)

    def test_entries_cover_each_pair_once(self):
        """Test calculate_entries emits i < j pairs in input order."""
        returns = {
            "a": random_returns(10, n=30),
            "b": random_returns(11, n=30),
            "c": random_returns(12, n=30),
        }

        entries = CorrelationMatrix().calculate_entries(returns)

        assert [(e.id_a, e.id_b) for e in entries] == [("a", "b"), ("a", "c"), ("b", "c")]

    def test_to_frame_is_symmetric_with_unit_diagonal(self):
        """Test the DataFrame view."""
        entries = [CorrelationEntry("a", "b", 0.3)]

        frame = CorrelationMatrix().to_frame(entries, ["a", "b"])

        assert frame.loc["a", "a"] == 1.0
        assert frame.loc["b", "b"] == 1.0
        assert frame.loc["a", "b"] == 0.3
        assert frame.loc["b", "a"] == 0.3

    def test_to_frame_ignores_unknown_ids(self):
        """Test pairs outside ids are skipped and missing pairs are 0."""
        entries = [CorrelationEntry("a", "z", 0.9)]

        frame = CorrelationMatrix().to_frame(entries, ["a", "b"])

        assert list(frame.columns) == ["a", "b"]
        assert frame.loc["a", "b"] == 0.0
        assert frame.values.diagonal().tolist() == [1.0, 1.0]

    def test_identify_highly_correlated(self):
        """Test threshold filtering uses absolute value."""
        entries = [
            CorrelationEntry("a", "b", 0.9),
            CorrelationEntry("a", "c", -0.75),
            CorrelationEntry("b", "c", 0.2),
        ]

        flagged = CorrelationMatrix().identify_highly_correlated(entries, threshold=0.7)

        assert [(e.id_a, e.id_b) for e in flagged] == [("a", "b"), ("a", "c")]


class TestDecorrelationFilter:
    """Tests for greedy decorrelation."""

    def test_duplicate_with_lower_sharpe_is_rejected(self, make_curve):
        """Test the redundant copy is rejected naming the kept stream."""
        returns = random_returns(20)
        best = stream_from_returns(make_curve, "best", returns, sharpe=2.0)
        copy = stream_from_returns(make_curve, "copy", returns, sharpe=1.0)
        other = stream_from_returns(make_curve, "other", random_returns(21), sharpe=0.5)

        result = DecorrelationFilter(max_correlation=0.4).filter([copy, other, best])

        assert [s.id for s in result.accepted] == ["best", "other"]
        rejection = result.rejection_for("copy")
        assert rejection is not None
        assert rejection.correlated_with == "best"
        assert rejection.coefficient == pytest.approx(1.0)

    def test_equal_sharpe_keeps_input_order(self, make_curve):
        """Test ties are broken by input order."""
        returns = random_returns(22)
        first = stream_from_returns(make_curve, "first", returns, sharpe=1.0)
        second = stream_from_returns(make_curve, "second", returns, sharpe=1.0)

        result = DecorrelationFilter().filter([first, second])

        assert [s.id for s in result.accepted] == ["first"]
        assert result.rejected[0].stream.id == "second"

    def test_accepted_set_respects_ceiling(self, make_curve):
        """Test every accepted pair is within the ceiling."""
        streams = []
        for seed in range(8):
            returns = random_returns(100 + seed)
            streams.append(stream_from_returns(make_curve, f"s{seed}", returns, sharpe=float(seed)))
            # A noisy near-copy that should collide with its source
            noisy = [r + n for r, n in zip(returns, random_returns(200 + seed, scale=0.002))]
            streams.append(stream_from_returns(make_curve, f"n{seed}", noisy, sharpe=seed + 0.5))

        ceiling = 0.4
        result = DecorrelationFilter(max_correlation=ceiling).filter(streams)
        matrix = CorrelationMatrix()

        for i, a in enumerate(result.accepted):
            for b in result.accepted[i + 1:]:
                assert abs(matrix.pearson(a.returns, b.returns)) <= ceiling
        assert len(result.accepted) + len(result.rejected) == len(streams)
        assert len(result.rejected) >= 1

    def test_nan_sharpe_ranks_as_zero(self, make_curve):
        """Test a NaN Sharpe does not break ordering."""
        good = stream_from_returns(make_curve, "good", random_returns(30), sharpe=1.0)
        broken = stream_from_returns(make_curve, "broken", random_returns(31), sharpe=float("nan"))

        result = DecorrelationFilter().filter([broken, good])

        assert result.accepted[0].id == "good"

    def test_invalid_ceiling_raises(self):
        """Test a ceiling outside [0, 1] is rejected."""
        with pytest.raises(ValueError):
            DecorrelationFilter(max_correlation=1.5)


class TestRiskParityWeighter:
    """Tests for inverse-volatility weighting."""

    def test_weights_sum_to_one(self, make_curve):
        """Test normalization."""
        streams = [
            stream_from_returns(make_curve, f"s{i}", random_returns(40 + i, scale=0.005 * (i + 1)))
            for i in range(5)
        ]

        weights = RiskParityWeighter().weight(streams)

        assert math.fsum(w.weight for w in weights.values()) == pytest.approx(1.0, abs=1e-9)

    def test_higher_volatility_gets_lower_weight(self, make_curve):
        """Test a stream with double volatility gets half the weight."""
        returns = random_returns(50)
        calm = stream_from_returns(make_curve, "calm", returns)
        wild = stream_from_returns(make_curve, "wild", [2 * r for r in returns])

        weights = RiskParityWeighter().weight([calm, wild])

        assert weights["calm"].weight > weights["wild"].weight
        assert weights["calm"].weight == pytest.approx(2 / 3, rel=1e-6)
        assert weights["wild"].weight == pytest.approx(1 / 3, rel=1e-6)

    def test_short_series_uses_fallback_volatility(self, make_curve):
        """Test one-return series take the 1.0 fallback and are flagged."""
        short = StrategyStream.from_curve(id="short", name="short", curve=[1000.0, 1010.0])
        normal = stream_from_returns(make_curve, "normal", random_returns(51))

        weights = RiskParityWeighter().weight([short, normal])

        assert weights["short"].volatility == 1.0
        assert weights["short"].used_fallback is True
        assert weights["normal"].used_fallback is False

    def test_flat_series_uses_volatility_floor(self):
        """Test zero volatility is floored, not divided by."""
        flat = StrategyStream.from_curve(id="flat", name="flat", curve=[1000.0] * 20)

        weights = RiskParityWeighter(volatility_floor=0.001).weight([flat])

        assert weights["flat"].volatility == 0.001
        assert weights["flat"].weight == pytest.approx(1.0)

    def test_empty_input(self):
        """Test no streams gives no weights."""
        assert RiskParityWeighter().weight([]) == {}


class TestRegimeRouter:
    """Tests for regime routing."""

    def test_trend_concentrates_into_trend_affinity(self):
        """Test the blend formula in a non-shock regime."""
        router = RegimeRouter()
        affinities = {
            "trender": RegimeAffinity(trend=1, range=0, shock=0),
            "ranger": RegimeAffinity(trend=0, range=1, shock=0),
        }

        routed = router.route({"trender": 0.5, "ranger": 0.5}, affinities, Regime.TREND)

        assert routed["trender"] == pytest.approx(0.8)
        assert routed["ranger"] == pytest.approx(0.2)

    def test_shock_uses_higher_concentration(self):
        """Test shock blends with 0.80."""
        router = RegimeRouter()
        affinities = {
            "hedge": RegimeAffinity(trend=0, range=0, shock=1),
            "ranger": RegimeAffinity(trend=0, range=1, shock=0),
        }

        routed = router.route({"hedge": 0.5, "ranger": 0.5}, affinities, Regime.SHOCK)

        assert routed["hedge"] == pytest.approx(0.9)
        assert routed["ranger"] == pytest.approx(0.1)

    def test_all_zero_affinity_still_sums_to_one(self):
        """Test zero affinity falls back to the base weights."""
        zero = RegimeAffinity(trend=0, range=0, shock=0)

        routed = RegimeRouter().route(
            {"a": 0.7, "b": 0.3},
            {"a": zero, "b": zero},
            Regime.RANGE,
        )

        assert math.fsum(routed.values()) == pytest.approx(1.0, abs=1e-9)
        assert routed["a"] == pytest.approx(0.7)

    def test_zero_blend_falls_back_to_equal_weights(self):
        """Test full concentration with zero affinity gives equal weights."""
        zero = RegimeAffinity(trend=0, range=0, shock=0)
        router = RegimeRouter(default_concentration=1.0)

        routed = router.route({"a": 0.9, "b": 0.1}, {"a": zero, "b": zero}, Regime.TREND)

        assert routed == {"a": 0.5, "b": 0.5}

    def test_negative_affinity_counts_as_zero(self):
        """Test negative scores are floored."""
        affinity = RegimeAffinity(trend=-3, range=1, shock=1)

        assert affinity.trend == 0.0
        assert affinity.share(Regime.RANGE) == pytest.approx(0.5)

    def test_weight_check_raises_invariant_violation(self):
        """Test weights that do not sum to 1 raise."""
        with pytest.raises(InvariantViolation):
            check_weights_sum({"a": 0.5, "b": 0.4}, 1e-9, stage="test")

    def test_invalid_concentration_raises(self):
        """Test concentration outside [0, 1] is rejected."""
        with pytest.raises(ValueError):
            RegimeRouter(shock_concentration=1.2)


class TestSynthesizer:
    """Tests for portfolio curve synthesis."""

    def test_weighted_blend_on_nominal_base(self):
        """Test truncation, normalization and weighting."""
        a = StrategyStream.from_curve(id="a", name="a", curve=[100, 110, 120])
        b = StrategyStream.from_curve(id="b", name="b", curve=[50, 50, 50, 50])

        curve = Synthesizer().synthesize([a, b], {"a": 0.5, "b": 0.5})

        assert curve == pytest.approx([1000.0, 1050.0, 1100.0])

    def test_short_curves_give_empty_result(self):
        """Test a shortest length below 2 yields an empty curve."""
        a = StrategyStream.from_curve(id="a", name="a", curve=[100])
        b = StrategyStream.from_curve(id="b", name="b", curve=[100, 101, 102])

        assert Synthesizer().synthesize([a, b], {"a": 0.5, "b": 0.5}) == []

    def test_metrics(self):
        """Test return and drawdown rounding."""
        metrics = Synthesizer().metrics([1000.0, 1100.0, 990.0, 1050.0])

        assert metrics.total_return == 5.0
        assert metrics.max_drawdown == 0.1

    def test_metrics_of_empty_curve_are_zero(self):
        """Test degenerate curves give all-zero metrics."""
        metrics = Synthesizer().metrics([])

        assert metrics.to_dict() == {
            "total_return": 0.0,
            "max_drawdown": 0.0,
            "sharpe": 0.0,
            "volatility": 0.0,
        }


class TestStrategyStream:
    """Tests for evaluated-strategy payloads."""

    def test_from_dict_ignores_unrelated_score_keys(self):
        """Test extra regime_scores keys do not break parsing."""
        stream = StrategyStream.from_dict({
            "id": "ema_eurusd",
            "equity_curve": [1000, 1010, 1005, 1020],
            "regime_scores": {"trend": 2, "range": 1, "shock": 0, "volatile": 5},
        })

        assert stream.affinity == RegimeAffinity(trend=2, range=1, shock=0)

    def test_from_dict_partial_scores_keep_default(self):
        """Test unlisted regimes stay neutral."""
        stream = StrategyStream.from_dict({
            "id": "rsi",
            "equityCurve": [1000, 990, 1001],
            "regimeScores": {"range": 3},
        })

        assert stream.affinity == RegimeAffinity(trend=1.0, range=3, shock=1.0)


class TestPortfolioConstructor:
    """Tests for the full construction run."""

    def build_streams(self, make_curve):
        base = random_returns(60)
        return [
            stream_from_returns(make_curve, "trend_a", base, sharpe=2.0,
                                affinity=RegimeAffinity(trend=3, range=1, shock=0)),
            stream_from_returns(make_curve, "trend_copy", base, sharpe=1.5,
                                affinity=RegimeAffinity(trend=3, range=1, shock=0)),
            stream_from_returns(make_curve, "range_b", random_returns(61), sharpe=1.0,
                                affinity=RegimeAffinity(trend=0, range=2, shock=1)),
            stream_from_returns(make_curve, "shock_c", random_returns(62, scale=0.02), sharpe=0.5,
                                affinity=RegimeAffinity(trend=0, range=0, shock=2)),
        ]

    def test_empty_input_gives_explicit_empty_portfolio(self):
        """Test no candidates."""
        result = PortfolioConstructor().construct([], Regime.TREND)

        assert result.is_empty
        assert result.accepted_count == 0
        assert result.synthesized_curve == []
        assert json.loads(result.to_json())["total_strategies"] == 0

    def test_construction_run(self, make_curve):
        """Test acceptance, weights and ordering."""
        result = PortfolioConstructor().construct(self.build_streams(make_curve), Regime.TREND)

        assert result.total_strategies == 4
        assert result.accepted_count == 3
        assert result.rejected_count == 1
        assert math.fsum(result.weights().values()) == pytest.approx(1.0, abs=1e-9)

        weights = [m.regime_weight for m in result.members]
        assert weights == sorted(weights, reverse=True)

        rejected = result.members[-1]
        assert rejected.id == "trend_copy"
        assert rejected.accepted is False
        assert rejected.regime_weight == 0.0
        assert rejected.correlated_with == "trend_a"

        assert result.members[0].id == "trend_a"
        assert len(result.synthesized_curve) == 201
        assert len(result.correlation_matrix) == 3

    def test_shock_favors_shock_affinity(self, make_curve):
        """Test routing changes with the regime."""
        constructor = PortfolioConstructor()
        streams = self.build_streams(make_curve)

        trend = constructor.construct(streams, Regime.TREND).weights()
        shock = constructor.construct(streams, Regime.SHOCK).weights()

        assert shock["shock_c"] > trend["shock_c"]

    def test_identical_input_gives_identical_json(self, make_curve):
        """Test idempotence of the published bytes."""
        constructor = PortfolioConstructor()

        first = constructor.construct(self.build_streams(make_curve), "trending").to_json()
        second = constructor.construct(self.build_streams(make_curve), "trending").to_json()

        assert first == second
        assert json.loads(first)["regime_label"] == "trend"

    def test_unknown_regime_label_raises(self, make_curve):
        """Test an unmapped label is rejected."""
        with pytest.raises(ValueError):
            PortfolioConstructor().construct(self.build_streams(make_curve), "sideways")

    def test_max_correlation_override(self, make_curve):
        """Test a ceiling of 1.0 keeps exact duplicates."""
        config = PortfolioConfig()
        result = PortfolioConstructor(config).construct(
            self.build_streams(make_curve),
            Regime.RANGE,
            max_correlation=1.0,
        )

        assert result.accepted_count == 4
        assert result.max_correlation == 1.0
