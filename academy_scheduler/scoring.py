"""
Per-dimension compatibility scores. Every function returns a value in [0, 1].

Several dimensions (timing, location) are fixed approximations kept behind
the same signatures so they can be replaced by real models later.
"""
import logging
from dataclasses import fields
from typing import Dict, Iterable, List, Optional, Sequence

from .config import ScoringWeights, check_weights
from .errors import DataStoreError
from .model import CandidateClass, StudentProgress, StudentSchedulePreferences, TimeSlot
from .timegrid import in_time_window

logger = logging.getLogger(__name__)

SAME_TYPE_CONTENT_SCORE = 0.9
DEFAULT_CONTENT_SCORE = 0.5
ONLINE_LOCATION_SCORE = 0.8
IN_PERSON_LOCATION_SCORE = 0.7
DEFAULT_TIMING_SCORE = 0.7

# Peak learning hours: 10-12 and 14-16
PEAK_HOURS = ((10, 12), (14, 16))
BUSINESS_HOURS = (9, 17)


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


# --- Make-up dimensions ---

def content_compatibility(original: CandidateClass, candidate: CandidateClass, store=None) -> float:
    if candidate.course_type == original.course_type:
        return SAME_TYPE_CONTENT_SCORE
    if store is None:
        return DEFAULT_CONTENT_SCORE

    try:
        similarity = store.content_similarity(original.course_id, candidate.course_id)
    except DataStoreError as e:
        logger.warning("Content similarity unavailable for %s/%s, using default: %s",
                       original.course_id, candidate.course_id, e)
        return DEFAULT_CONTENT_SCORE

    if similarity is None:
        logger.warning("No content similarity for %s/%s, using default",
                       original.course_id, candidate.course_id)
        return DEFAULT_CONTENT_SCORE
    return _clamp(similarity)


def schedule_preference(candidate: CandidateClass, prefs: StudentSchedulePreferences) -> float:
    if any(entry.day_of_week in prefs.preferred_days for entry in candidate.schedules):
        return 0.8
    return 0.6


def teacher_compatibility(original_teacher_id: str, candidate_teacher_id: str, prefs: StudentSchedulePreferences) -> float:
    if candidate_teacher_id == original_teacher_id:
        return 1.0
    if candidate_teacher_id in prefs.preferred_teachers:
        return 0.9
    if candidate_teacher_id in prefs.avoided_teachers:
        return 0.2
    return 0.7 if prefs.willing_to_change_teacher else 0.4


def class_size_preference(candidate: CandidateClass, prefs: StudentSchedulePreferences) -> float:
    enrolled = candidate.current_enrollment
    if prefs.preferred_class_size_min <= enrolled <= prefs.preferred_class_size_max:
        return 1.0

    distance = max(0, prefs.preferred_class_size_min - enrolled) + max(0, enrolled - prefs.preferred_class_size_max)
    spread = max(prefs.preferred_class_size_max, candidate.capacity)
    if spread <= 0:
        return 0.1
    return _clamp(1 - distance / spread, 0.1, 1.0)


def location_preference(candidate: CandidateClass, prefs: StudentSchedulePreferences) -> float:
    return ONLINE_LOCATION_SCORE if candidate.is_online else IN_PERSON_LOCATION_SCORE


def timing_preference(candidate: CandidateClass, prefs: StudentSchedulePreferences) -> float:
    return DEFAULT_TIMING_SCORE


def availability(available_spots: int, capacity: int) -> float:
    if capacity <= 0:
        return 0.0
    return _clamp(available_spots / capacity)


def composite(scores: Dict[str, float], weights) -> float:
    """
    Weighted sum of per-dimension scores. `weights` is a weights dataclass
    (field names must match the keys of `scores`); it is validated first.
    """
    check_weights(type(weights).__name__, weights)
    total = 0.0
    for f in fields(weights):
        total += getattr(weights, f.name) * scores.get(f.name, 0.0)
    return _clamp(total)


# --- Slot scores used by the request processor ---

def utilization_score(slot: TimeSlot) -> float:
    if slot.capacity.max_students <= 0:
        return 0.0
    return _clamp(1 - slot.capacity.current_enrollment / slot.capacity.max_students)


def peak_hour_score(hour: int) -> float:
    if any(lo <= hour < hi for lo, hi in PEAK_HOURS):
        return 1.0
    if BUSINESS_HOURS[0] <= hour < BUSINESS_HOURS[1]:
        return 0.7
    return 0.3


def _student_window_score(slot: TimeSlot, progress: StudentProgress) -> float:
    windows = progress.preferred_times.get(slot.day_of_week)
    if not progress.preferred_times:
        return peak_hour_score(slot.start_hour)
    if not windows:
        return 0.3
    return 1.0 if any(in_time_window(slot.start_time, w) for w in windows) else 0.5


def student_preference_score(
    slot: TimeSlot,
    progress: Sequence[StudentProgress],
    preferred_slots: Iterable[TimeSlot] = (),
) -> float:
    requested = list(preferred_slots)
    if any(p.key == slot.key for p in requested):
        return 1.0
    if not progress:
        score = peak_hour_score(slot.start_hour)
    else:
        score = sum(_student_window_score(slot, p) for p in progress) / len(progress)
    # slots the request did not ask for score at most half
    return score / 2 if requested else score


def continuity_score(slot: TimeSlot) -> float:
    day_score = 1.0 if 1 <= slot.day_of_week <= 5 else 0.5
    hour_score = 1.0 if BUSINESS_HOURS[0] <= slot.start_hour < BUSINESS_HOURS[1] else 0.3
    return (day_score + hour_score) / 2


def slot_score(
    slot: TimeSlot,
    progress: List[StudentProgress],
    weights: ScoringWeights,
    preferred_slots: Iterable[TimeSlot] = (),
) -> float:
    """Weighted slot score over utilization, student preference and continuity."""
    return (
        utilization_score(slot) * weights.resource_utilization
        + student_preference_score(slot, progress, preferred_slots) * weights.student_availability
        + continuity_score(slot) * weights.schedule_continuity
    )


def slot_weight_total(weights: ScoringWeights) -> float:
    return weights.resource_utilization + weights.student_availability + weights.schedule_continuity


def normalized_slot_score(score: float, weights: ScoringWeights) -> float:
    total = slot_weight_total(weights)
    return _clamp(score / total) if total > 0 else 0.0


def slot_confidence(score: float, weights: ScoringWeights) -> float:
    return 0.5 + 0.5 * normalized_slot_score(score, weights)


def recommendation_tier(overall: float, thresholds) -> str:
    if overall >= thresholds.excellent_threshold:
        return 'excellent'
    if overall >= thresholds.high_threshold:
        return 'high'
    if overall >= thresholds.medium_threshold:
        return 'medium'
    return 'low'


def availability_scorer(slot: TimeSlot, scheduled_class=None) -> float:
    """Default scorer for the conflict resolver's slot search."""
    return availability(slot.capacity.available_spots, slot.capacity.max_students)


def default_progress(student_id: str, course_id: str = '') -> StudentProgress:
    return StudentProgress(student_id=student_id, course_id=course_id)


def resolve_preferences(student_id: str, explicit: Optional[StudentSchedulePreferences], store) -> StudentSchedulePreferences:
    if explicit is not None:
        return explicit
    try:
        stored = store.get_student_preferences(student_id)
    except DataStoreError as e:
        logger.warning("Preferences unavailable for student %s, using defaults: %s", student_id, e)
        stored = None
    return stored or StudentSchedulePreferences(student_id=student_id)
