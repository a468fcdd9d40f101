"""
Tests for the Threshold Resolver and Breach Classifier.

These tests verify:
1. RESOLVE: assignment overrides win per dimension over catalog defaults
2. CLASSIFY: direction-aware levels, equality breaches, critical precedence
3. PRIORITY: the ordered auto-priority rules
4. LIMITS: soft/hard/none classification and limit severity
5. PERIODS: quarter labels and rollover
"""

from types import SimpleNamespace

import pytest

from risk_register.models import (
    BreachLevel,
    Direction,
    LimitBreachKind,
    LimitDirection,
    Severity,
)
from risk_register.services import ValidationError
from risk_register.services.period_snapshotter import (
    Period,
    format_period,
    next_period,
    parse_period,
    score_level,
    validate_period,
)
from risk_register.services.thresholds import (
    EffectiveLimit,
    EffectiveThresholds,
    auto_priority,
    breach_percentage,
    breached_threshold,
    classify_level,
    classify_limit,
    is_same_or_worse,
    limit_severity,
    resolve_limit,
    resolve_thresholds,
)


def _indicator(warning=75.0, critical=90.0, direction=Direction.LOWER_IS_BETTER):
    return SimpleNamespace(threshold_warning=warning, threshold_critical=critical, direction=direction)


def _assignment(warning=None, critical=None):
    return SimpleNamespace(warning_override=warning, critical_override=critical)


# =============================================================================
# TEST: THRESHOLD RESOLUTION
# =============================================================================


class TestResolveThresholds:
    """Per-dimension override resolution."""

    def test_catalog_defaults_apply_without_overrides(self):
        thresholds = resolve_thresholds(_assignment(), _indicator())

        assert thresholds.warning == 75.0
        assert thresholds.critical == 90.0
        assert thresholds.warning_source == "catalog"
        assert thresholds.critical_source == "catalog"

    def test_override_replaces_only_its_own_dimension(self):
        thresholds = resolve_thresholds(_assignment(warning=80.0), _indicator())

        assert thresholds.warning == 80.0
        assert thresholds.warning_source == "override"
        assert thresholds.critical == 90.0
        assert thresholds.critical_source == "catalog"

    def test_override_of_zero_is_honoured(self):
        """A zero override is a real value, not a missing one."""
        thresholds = resolve_thresholds(_assignment(warning=0.0), _indicator())
        assert thresholds.warning == 0.0
        assert thresholds.warning_source == "override"

    def test_nothing_resolvable(self):
        thresholds = resolve_thresholds(_assignment(), _indicator(warning=None, critical=None))

        assert thresholds.is_determinable is False
        assert thresholds.warning_source is None

    def test_direction_comes_from_catalog(self):
        thresholds = resolve_thresholds(
            _assignment(), _indicator(direction=Direction.HIGHER_IS_BETTER)
        )
        assert thresholds.direction == Direction.HIGHER_IS_BETTER


# =============================================================================
# TEST: CLASSIFICATION
# =============================================================================


class TestClassifyLevel:
    """Direction-aware breach levels."""

    def test_override_warning_example(self):
        """Catalog 75/90, override warning 80, value 85 -> warning at 80."""
        thresholds = resolve_thresholds(_assignment(warning=80.0), _indicator())
        level = classify_level(85.0, thresholds)

        assert level == BreachLevel.WARNING
        assert breached_threshold(level, thresholds) == 80.0
        assert breach_percentage(85.0, 80.0) == 6.25
        assert auto_priority(level, 6.25) == Severity.LOW

    @pytest.mark.parametrize(
        "value,expected",
        [
            (50.0, BreachLevel.NORMAL),
            (75.0, BreachLevel.WARNING),
            (89.9, BreachLevel.WARNING),
            (90.0, BreachLevel.CRITICAL),
            (150.0, BreachLevel.CRITICAL),
        ],
    )
    def test_lower_is_better(self, value, expected):
        thresholds = EffectiveThresholds(warning=75.0, critical=90.0)
        assert classify_level(value, thresholds) == expected

    @pytest.mark.parametrize(
        "value,expected",
        [
            (99.5, BreachLevel.NORMAL),
            (95.0, BreachLevel.WARNING),
            (90.0, BreachLevel.CRITICAL),
            (10.0, BreachLevel.CRITICAL),
        ],
    )
    def test_higher_is_better(self, value, expected):
        thresholds = EffectiveThresholds(
            warning=95.0, critical=90.0, direction=Direction.HIGHER_IS_BETTER
        )
        assert classify_level(value, thresholds) == expected

    def test_only_critical_defined(self):
        thresholds = EffectiveThresholds(warning=None, critical=90.0)

        assert classify_level(80.0, thresholds) == BreachLevel.NORMAL
        assert classify_level(95.0, thresholds) == BreachLevel.CRITICAL

    def test_undetermined_without_thresholds(self):
        thresholds = EffectiveThresholds(warning=None, critical=None)
        assert classify_level(1000.0, thresholds) == BreachLevel.UNDETERMINED

    def test_threshold_order_follows_direction(self):
        assert EffectiveThresholds(warning=75.0, critical=90.0).is_ordered
        assert not EffectiveThresholds(warning=90.0, critical=75.0).is_ordered
        assert EffectiveThresholds(
            warning=90.0, critical=75.0, direction=Direction.HIGHER_IS_BETTER
        ).is_ordered
        assert EffectiveThresholds(warning=None, critical=75.0).is_ordered

    def test_same_or_worse(self):
        assert is_same_or_worse(BreachLevel.WARNING, BreachLevel.WARNING)
        assert is_same_or_worse(BreachLevel.CRITICAL, BreachLevel.WARNING)
        assert not is_same_or_worse(BreachLevel.WARNING, BreachLevel.CRITICAL)


# =============================================================================
# TEST: PERCENTAGE & PRIORITY
# =============================================================================


class TestPriority:
    """Breach percentage and the ordered priority rules."""

    def test_percentage_undefined_for_zero_threshold(self):
        assert breach_percentage(5.0, 0.0) is None

    def test_percentage_is_signed(self):
        assert breach_percentage(40.0, 50.0) == -20.0

    @pytest.mark.parametrize(
        "level,percentage,expected",
        [
            (BreachLevel.CRITICAL, 60.0, Severity.CRITICAL),
            (BreachLevel.CRITICAL, 50.0, Severity.HIGH),
            (BreachLevel.CRITICAL, 10.0, Severity.HIGH),
            (BreachLevel.CRITICAL, None, Severity.HIGH),
            (BreachLevel.WARNING, 150.0, Severity.HIGH),
            (BreachLevel.WARNING, 75.0, Severity.MEDIUM),
            (BreachLevel.WARNING, 50.0, Severity.LOW),
            (BreachLevel.WARNING, None, Severity.LOW),
        ],
    )
    def test_rules_in_order(self, level, percentage, expected):
        assert auto_priority(level, percentage) == expected

    def test_negative_percentage_falls_back_to_level(self):
        """Higher-is-better breaches have negative percentages, compared signed."""
        assert auto_priority(BreachLevel.WARNING, -75.0) == Severity.LOW
        assert auto_priority(BreachLevel.CRITICAL, -60.0) == Severity.HIGH

    def test_higher_is_better_warning_far_below_threshold(self):
        """Warning 80, value 30: -62.5% stays low priority."""
        thresholds = EffectiveThresholds(
            warning=80.0, critical=20.0, direction=Direction.HIGHER_IS_BETTER
        )
        level = classify_level(30.0, thresholds)
        percentage = breach_percentage(30.0, 80.0)

        assert level == BreachLevel.WARNING
        assert percentage == -62.5
        assert auto_priority(level, percentage) == Severity.LOW


# =============================================================================
# TEST: TOLERANCE LIMITS
# =============================================================================


class TestClassifyLimit:
    """Soft/hard limit classification."""

    def test_above_soft(self):
        limit = EffectiveLimit(soft=80.0, hard=100.0)
        evaluation = classify_limit(90.0, limit)

        assert evaluation.kind == LimitBreachKind.SOFT
        assert evaluation.limit_value == 80.0
        assert evaluation.variance_amount == 10.0
        assert evaluation.variance_percentage == 12.5

    def test_hard_checked_first(self):
        evaluation = classify_limit(100.0, EffectiveLimit(soft=80.0, hard=100.0))

        assert evaluation.kind == LimitBreachKind.HARD
        assert evaluation.limit_value == 100.0

    def test_within_bounds(self):
        evaluation = classify_limit(50.0, EffectiveLimit(soft=80.0, hard=100.0))

        assert evaluation.kind == LimitBreachKind.NONE
        assert evaluation.is_breach is False

    def test_below(self):
        limit = EffectiveLimit(soft=20.0, hard=10.0, direction=LimitDirection.BELOW)

        assert classify_limit(15.0, limit).kind == LimitBreachKind.SOFT
        assert classify_limit(5.0, limit).kind == LimitBreachKind.HARD
        assert classify_limit(25.0, limit).kind == LimitBreachKind.NONE

    def test_between_breaches_at_either_edge(self):
        limit = EffectiveLimit(
            soft=80.0,
            hard=100.0,
            direction=LimitDirection.BETWEEN,
            lower_soft=20.0,
            lower_hard=10.0,
        )

        assert classify_limit(50.0, limit).kind == LimitBreachKind.NONE
        lower_soft = classify_limit(15.0, limit)
        assert lower_soft.kind == LimitBreachKind.SOFT
        assert lower_soft.limit_value == 20.0
        assert classify_limit(10.0, limit).kind == LimitBreachKind.HARD
        assert classify_limit(85.0, limit).kind == LimitBreachKind.SOFT

    def test_zero_bound_has_no_percentage(self):
        evaluation = classify_limit(5.0, EffectiveLimit(soft=None, hard=0.0))

        assert evaluation.kind == LimitBreachKind.HARD
        assert evaluation.variance_percentage is None

    def test_resolve_limit_from_row(self):
        row = SimpleNamespace(
            soft_limit=1.0,
            hard_limit=2.0,
            lower_soft_limit=None,
            lower_hard_limit=None,
            direction=LimitDirection.ABOVE,
        )
        limit = resolve_limit(row)
        assert limit.is_determinable
        assert limit.hard == 2.0

    @pytest.mark.parametrize(
        "kind,variance,expected",
        [
            (LimitBreachKind.HARD, 60.0, Severity.CRITICAL),
            (LimitBreachKind.HARD, 10.0, Severity.HIGH),
            (LimitBreachKind.HARD, None, Severity.HIGH),
            (LimitBreachKind.SOFT, 30.0, Severity.MEDIUM),
            (LimitBreachKind.SOFT, 12.5, Severity.LOW),
            (LimitBreachKind.NONE, None, Severity.LOW),
        ],
    )
    def test_limit_severity(self, kind, variance, expected):
        assert limit_severity(kind, variance) == expected


# =============================================================================
# TEST: PERIOD LABELS
# =============================================================================


class TestPeriods:
    """Quarter labels, parsing and rollover."""

    def test_format_and_parse(self):
        assert format_period(Period(2025, 3)) == "Q3 2025"
        assert parse_period("Q3 2025") == Period(2025, 3)

    def test_q4_rolls_into_next_year(self):
        assert next_period(Period(2025, 4)) == Period(2026, 1)
        assert next_period(Period(2025, 1)) == Period(2025, 2)

    @pytest.mark.parametrize("label", ["Q5 2025", "2025 Q1", "q1-2025", ""])
    def test_parse_rejects_malformed(self, label):
        with pytest.raises(ValidationError):
            parse_period(label)

    def test_validate_period_bounds(self):
        with pytest.raises(ValidationError):
            validate_period(2025, 0)
        with pytest.raises(ValidationError):
            validate_period(1999, 1)
        assert validate_period(2025, 4) == Period(2025, 4)

    def test_periods_order_chronologically(self):
        assert Period(2024, 4) < Period(2025, 1) < Period(2025, 2)

    @pytest.mark.parametrize(
        "score,level",
        [(20, "Extreme"), (15, "Extreme"), (12, "High"), (6, "Medium"), (4, "Low")],
    )
    def test_score_level(self, score, level):
        assert score_level(score) == level
