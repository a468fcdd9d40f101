"""
Threshold Resolver and Breach Classifier.

Pure functions only: no session, no clock, no logging. Everything here is
deterministic and safe to call concurrently for different assignments.

Pipeline used by the engines:
    resolve_thresholds -> classify_level -> breach_percentage -> auto_priority
    resolve_limit      -> classify_limit
"""

from dataclasses import dataclass
from typing import Protocol

from ..models import (
    BreachLevel,
    Direction,
    LimitBreachKind,
    LimitDirection,
    Severity,
)


LEVEL_RANK = {
    BreachLevel.NORMAL: 0,
    BreachLevel.WARNING: 1,
    BreachLevel.CRITICAL: 2,
}

PRIORITY_RANK = {
    Severity.CRITICAL: 1,
    Severity.HIGH: 2,
    Severity.MEDIUM: 3,
    Severity.LOW: 4,
}


class _AssignmentLike(Protocol):
    warning_override: float | None
    critical_override: float | None


class _IndicatorLike(Protocol):
    threshold_warning: float | None
    threshold_critical: float | None
    direction: Direction


class _LimitLike(Protocol):
    soft_limit: float | None
    hard_limit: float | None
    lower_soft_limit: float | None
    lower_hard_limit: float | None
    direction: LimitDirection


# =============================================================================
# THRESHOLD RESOLVER
# =============================================================================


@dataclass(frozen=True)
class EffectiveThresholds:
    """Thresholds in force for one assignment."""
    warning: float | None
    critical: float | None
    direction: Direction = Direction.LOWER_IS_BETTER
    warning_source: str | None = None  # "override" | "catalog" | None
    critical_source: str | None = None

    @property
    def is_determinable(self) -> bool:
        return self.warning is not None or self.critical is not None

    @property
    def is_ordered(self) -> bool:
        """Critical is at least as extreme as warning in the configured direction."""
        if self.warning is None or self.critical is None:
            return True
        if self.direction == Direction.HIGHER_IS_BETTER:
            return self.critical <= self.warning
        return self.critical >= self.warning

    def to_dict(self) -> dict:
        return {
            "warning": self.warning,
            "critical": self.critical,
            "direction": self.direction.value,
            "warning_source": self.warning_source,
            "critical_source": self.critical_source,
        }


def _pick(override: float | None, default: float | None) -> tuple[float | None, str | None]:
    if override is not None:
        return override, "override"
    if default is not None:
        return default, "catalog"
    return None, None


def resolve_thresholds(
    assignment: _AssignmentLike,
    indicator: _IndicatorLike,
) -> EffectiveThresholds:
    """
    Compute the effective warning/critical pair for an assignment.

    Each dimension is resolved on its own: a non-null override wins,
    otherwise the catalog default applies. A mix (override warning with
    catalog critical) only happens when the assignment overrides just one.
    """
    warning, warning_source = _pick(assignment.warning_override, indicator.threshold_warning)
    critical, critical_source = _pick(assignment.critical_override, indicator.threshold_critical)
    return EffectiveThresholds(
        warning=warning,
        critical=critical,
        direction=indicator.direction or Direction.LOWER_IS_BETTER,
        warning_source=warning_source,
        critical_source=critical_source,
    )


@dataclass(frozen=True)
class EffectiveLimit:
    """Bounds in force for a tolerance limit."""
    soft: float | None
    hard: float | None
    direction: LimitDirection = LimitDirection.ABOVE
    lower_soft: float | None = None
    lower_hard: float | None = None

    @property
    def is_determinable(self) -> bool:
        return any(
            v is not None for v in (self.soft, self.hard, self.lower_soft, self.lower_hard)
        )


def resolve_limit(limit: _LimitLike) -> EffectiveLimit:
    return EffectiveLimit(
        soft=limit.soft_limit,
        hard=limit.hard_limit,
        direction=limit.direction or LimitDirection.ABOVE,
        lower_soft=limit.lower_soft_limit,
        lower_hard=limit.lower_hard_limit,
    )


# =============================================================================
# BREACH CLASSIFIER
# =============================================================================


def _crosses(value: float, threshold: float, direction: Direction) -> bool:
    # Equality breaches
    if direction == Direction.HIGHER_IS_BETTER:
        return value <= threshold
    return value >= threshold


def classify_level(value: float, thresholds: EffectiveThresholds) -> BreachLevel:
    """Classify a measurement. Critical takes precedence over warning."""
    if not thresholds.is_determinable:
        return BreachLevel.UNDETERMINED

    if thresholds.critical is not None and _crosses(value, thresholds.critical, thresholds.direction):
        return BreachLevel.CRITICAL
    if thresholds.warning is not None and _crosses(value, thresholds.warning, thresholds.direction):
        return BreachLevel.WARNING
    return BreachLevel.NORMAL


def breached_threshold(level: BreachLevel, thresholds: EffectiveThresholds) -> float | None:
    """The threshold value a breach at ``level`` crossed."""
    if level == BreachLevel.CRITICAL:
        return thresholds.critical
    if level == BreachLevel.WARNING:
        return thresholds.warning
    return None


def breach_percentage(measured: float, threshold: float) -> float | None:
    """
    Signed relative distance past a threshold, in percent.

    ``None`` when the threshold is zero; callers fall back to level-only
    priority rules in that case.
    """
    if threshold == 0:
        return None
    return round((measured - threshold) / abs(threshold) * 100, 2)


def auto_priority(level: BreachLevel, percentage: float | None) -> Severity:
    """
    Derive breach priority. The first matching rule wins:

    1. critical level and percentage > 50% -> critical
    2. critical level                      -> high
    3. percentage > 100%                   -> high
    4. percentage > 50%                    -> medium
    5. otherwise                           -> low

    ``percentage`` is compared signed, so a higher-is-better breach (which
    lies below its threshold) only reaches the level rules.
    """
    if level == BreachLevel.CRITICAL and percentage is not None and percentage > 50:
        return Severity.CRITICAL
    if level == BreachLevel.CRITICAL:
        return Severity.HIGH
    if percentage is not None and percentage > 100:
        return Severity.HIGH
    if percentage is not None and percentage > 50:
        return Severity.MEDIUM
    return Severity.LOW


def is_same_or_worse(new_level: BreachLevel, previous_level: BreachLevel) -> bool:
    return LEVEL_RANK.get(new_level, 0) >= LEVEL_RANK.get(previous_level, 0)


@dataclass(frozen=True)
class LimitEvaluation:
    """Result of checking one value against a tolerance limit."""
    kind: LimitBreachKind
    limit_value: float | None = None
    variance_amount: float = 0.0
    variance_percentage: float | None = None

    @property
    def is_breach(self) -> bool:
        return self.kind != LimitBreachKind.NONE


def _limit_hit(value: float, limit: EffectiveLimit, upper: float | None, lower: float | None) -> float | None:
    """Return the bound crossed by ``value``, if any."""
    if limit.direction == LimitDirection.ABOVE:
        if upper is not None and value >= upper:
            return upper
        return None
    if limit.direction == LimitDirection.BELOW:
        if upper is not None and value <= upper:
            return upper
        return None
    # between: acceptable band is strictly inside [lower, upper]
    if upper is not None and value >= upper:
        return upper
    if lower is not None and value <= lower:
        return lower
    return None


def classify_limit(value: float, limit: EffectiveLimit) -> LimitEvaluation:
    """Classify a value against soft/hard bounds. Hard is checked first."""
    for kind, upper, lower in (
        (LimitBreachKind.HARD, limit.hard, limit.lower_hard),
        (LimitBreachKind.SOFT, limit.soft, limit.lower_soft),
    ):
        bound = _limit_hit(value, limit, upper, lower)
        if bound is not None:
            variance = abs(value - bound)
            return LimitEvaluation(
                kind=kind,
                limit_value=bound,
                variance_amount=round(variance, 4),
                variance_percentage=round(variance / abs(bound) * 100, 2) if bound != 0 else None,
            )
    return LimitEvaluation(kind=LimitBreachKind.NONE)


def limit_severity(kind: LimitBreachKind, variance_percentage: float | None = None) -> Severity:
    """Severity of a limit breach, scaled by how far past the limit the value is."""
    variance = abs(variance_percentage) if variance_percentage is not None else 0.0
    if kind == LimitBreachKind.HARD:
        return Severity.CRITICAL if variance > 50 else Severity.HIGH
    if kind == LimitBreachKind.SOFT:
        return Severity.MEDIUM if variance > 25 else Severity.LOW
    return Severity.LOW
