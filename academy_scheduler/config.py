from dataclasses import dataclass, fields, is_dataclass, replace, asdict
from typing import Any, Dict, Tuple

from .errors import ConfigurationError

WEIGHT_TOLERANCE = 1e-6


@dataclass(frozen=True)
class ScoringWeights:
    """Weights used by the request processor when picking a time slot."""
    content_progression: float = 0.30
    student_availability: float = 0.25
    teacher_availability: float = 0.20
    class_size_optimization: float = 0.10
    learning_pace_matching: float = 0.05
    skill_level_alignment: float = 0.05
    schedule_continuity: float = 0.03
    resource_utilization: float = 0.02


@dataclass(frozen=True)
class SchedulingConstraints:
    max_students_per_class: int = 9
    min_students_for_group_class: int = 2
    working_hours_start: int = 9   # 09:00
    working_hours_end: int = 18    # 18:00, exclusive
    slot_minutes: int = 60
    available_days: Tuple[int, ...] = (1, 2, 3, 4, 5)  # Monday to Friday
    max_recommendations: int = 10
    default_location: str = ''  # empty = room assigned later


@dataclass(frozen=True)
class SuggestionWeights:
    """Make-up suggestion weights (must sum to 1.0)."""
    content_compatibility: float = 0.30
    schedule_preference: float = 0.25
    teacher_compatibility: float = 0.20
    class_size_preference: float = 0.10
    location_preference: float = 0.08
    timing_preference: float = 0.05
    availability_score: float = 0.02


@dataclass(frozen=True)
class SuggestionThresholds:
    min_overall_score: float = 0.4
    min_content_score: float = 0.3
    min_schedule_score: float = 0.2
    excellent_threshold: float = 0.85
    high_threshold: float = 0.70
    medium_threshold: float = 0.55


@dataclass(frozen=True)
class SuggestionConfig:
    weights: SuggestionWeights = SuggestionWeights()
    thresholds: SuggestionThresholds = SuggestionThresholds()
    max_suggestions: int = 10
    max_suggestions_per_day: int = 3
    max_suggestions_per_teacher: int = 2


@dataclass(frozen=True)
class OptimizationConfig:
    alternative_count: int = 3
    balance_workload: bool = True
    optimize_timing: bool = True
    default_rating: float = 3.0  # out of 5, used when a student has no history


@dataclass(frozen=True)
class SchedulingConfig:
    version: str = '1.0.0'
    max_processing_seconds: float = 30.0
    enable_conflict_resolution: bool = True
    enable_optimization: bool = True

    scoring_weights: ScoringWeights = ScoringWeights()
    constraints: SchedulingConstraints = SchedulingConstraints()
    suggestion: SuggestionConfig = SuggestionConfig()
    optimization: OptimizationConfig = OptimizationConfig()

    def validate(self) -> 'SchedulingConfig':
        check_weights('scoring_weights', self.scoring_weights)
        check_weights('suggestion.weights', self.suggestion.weights)

        c = self.constraints
        if c.max_students_per_class < 1:
            raise ConfigurationError("constraints.max_students_per_class must be at least 1")
        if not 0 <= c.working_hours_start < c.working_hours_end <= 24:
            raise ConfigurationError("constraints.working_hours_start/end must define a non-empty range within the day")
        if c.slot_minutes <= 0 or 60 % c.slot_minutes != 0 and c.slot_minutes % 60 != 0:
            raise ConfigurationError("constraints.slot_minutes must divide or be a multiple of 60")
        if not c.available_days or any(d < 1 or d > 7 for d in c.available_days):
            raise ConfigurationError("constraints.available_days must contain ISO weekdays (1-7)")
        if self.max_processing_seconds <= 0:
            raise ConfigurationError("max_processing_seconds must be positive")

        t = self.suggestion.thresholds
        if not t.excellent_threshold >= t.high_threshold >= t.medium_threshold:
            raise ConfigurationError("suggestion.thresholds tiers must be ordered excellent >= high >= medium")
        return self

    def merged(self, partial: Dict[str, Any]) -> 'SchedulingConfig':
        """
        Returns a new validated configuration with `partial` applied on top.
        `partial` is a nested dict mirroring the dataclass structure.
        The current instance is never modified.
        """
        return _merge(self, partial, '').validate()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def check_weights(name: str, weights) -> None:
    values = [getattr(weights, f.name) for f in fields(weights)]
    if any(v < 0 for v in values):
        raise ConfigurationError(f"{name}: weights must be non-negative")
    total = sum(values)
    if abs(total - 1.0) > WEIGHT_TOLERANCE:
        raise ConfigurationError(f"{name}: weights must sum to 1.0 (got {total:.6f})")


def _merge(obj, partial: Dict[str, Any], path: str):
    if not isinstance(partial, dict):
        raise ConfigurationError(f"Expected a mapping for '{path.rstrip('.') or 'config'}'")

    known = {f.name for f in fields(obj)}
    changes = {}
    for key, value in partial.items():
        if key not in known:
            raise ConfigurationError(f"Unknown configuration key: {path}{key}")
        current = getattr(obj, key)
        if is_dataclass(current):
            changes[key] = _merge(current, value, f"{path}{key}.")
        elif isinstance(current, tuple):
            changes[key] = tuple(value)
        else:
            changes[key] = value
    return replace(obj, **changes)


def unflatten(params: Dict[str, Any]) -> Dict[str, Any]:
    """'scoring_weights.resource_utilization' -> {'scoring_weights': {'resource_utilization': ...}}"""
    nested: Dict[str, Any] = {}
    for dotted, value in params.items():
        node = nested
        parts = dotted.split('.')
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value
    return nested


DEFAULT_CONFIG = SchedulingConfig().validate()
