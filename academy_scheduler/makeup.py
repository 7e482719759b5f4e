import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from . import scoring
from .config import SuggestionConfig
from .errors import ValidationError
from .model import (
    CandidateClass, DetailedMakeUpSuggestion, MakeUpSuggestionRequest, StudentSchedulePreferences,
    SuggestionConstraints,
)
from .timegrid import as_utc, next_occurrence

logger = logging.getLogger(__name__)


@dataclass
class _Session:
    start: datetime
    end: datetime


class MakeUpSuggestionEngine:
    """
    Ranks existing classes that can host a student whose class was postponed.

    Each candidate gets seven dimension scores combined with the configured
    weights; weak candidates are filtered out, the rest sorted by overall score
    (class id breaks ties) and thinned so no teacher or calendar day dominates.
    """

    def __init__(self, store, config: SuggestionConfig = SuggestionConfig(),
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.store = store
        self.config = config
        self.clock = clock

    def generate_suggestions(self, request: MakeUpSuggestionRequest) -> List[DetailedMakeUpSuggestion]:
        original = self.store.get_class(request.original_class_id)
        if original is None:
            raise ValidationError(f"Class not found: {request.original_class_id}")

        prefs = scoring.resolve_preferences(request.student_id, request.student_preferences, self.store)
        constraints = request.constraints or SuggestionConstraints()
        # every timestamp is compared in UTC
        now = as_utc(request.reference_time or self.clock())
        earliest = as_utc(constraints.earliest_date)
        latest = as_utc(constraints.latest_date)
        not_before = now + timedelta(hours=prefs.advance_notice_required_hours)
        if earliest and earliest > not_before:
            not_before = earliest

        scored = []
        for candidate in self._candidates(original, constraints):
            session = self._next_session(candidate, not_before)
            if session is None:
                logger.debug("Class %s has no session on or after %s", candidate.id, not_before)
                continue
            if latest and session.start > latest:
                continue
            suggestion = self._score(candidate, original, prefs, session)
            if self._passes(suggestion, constraints):
                scored.append(suggestion)

        scored.sort(key=lambda s: (-s.overall_compatibility_score, s.class_id))
        limit = request.max_suggestions or self.config.max_suggestions
        final = self._diversify(scored, limit)

        logger.info("Make-up for student %s (class %s): %d candidates passed, %d suggested",
                    request.student_id, original.id, len(scored), len(final))
        return final

    def _candidates(self, original: CandidateClass, constraints: SuggestionConstraints) -> List[CandidateClass]:
        course_type = None if constraints.include_other_course_types else original.course_type
        excluded_classes = set(constraints.excluded_class_ids)
        excluded_teachers = set(constraints.excluded_teacher_ids)
        return [
            c for c in self.store.list_candidate_classes(course_type)
            if c.id != original.id
            and c.available_spots > 0
            and c.id not in excluded_classes
            and c.teacher_id not in excluded_teachers
        ]

    @staticmethod
    def _next_session(candidate: CandidateClass, not_before: datetime) -> Optional[_Session]:
        duration = timedelta(minutes=candidate.duration_minutes)
        explicit = as_utc(candidate.next_session_start)
        if explicit and explicit >= not_before:
            start = explicit
        elif candidate.schedules:
            start = min(next_occurrence(entry, not_before) for entry in candidate.schedules)
        else:
            return None
        return _Session(start=start, end=start + duration)

    def _score(self, candidate: CandidateClass, original: CandidateClass,
               prefs: StudentSchedulePreferences, session: _Session) -> DetailedMakeUpSuggestion:
        scores = {
            'content_compatibility': scoring.content_compatibility(original, candidate, self.store),
            'schedule_preference': scoring.schedule_preference(candidate, prefs),
            'teacher_compatibility': scoring.teacher_compatibility(original.teacher_id, candidate.teacher_id, prefs),
            'class_size_preference': scoring.class_size_preference(candidate, prefs),
            'location_preference': scoring.location_preference(candidate, prefs),
            'timing_preference': scoring.timing_preference(candidate, prefs),
            'availability_score': scoring.availability(candidate.available_spots, candidate.capacity),
        }
        overall = scoring.composite(scores, self.config.weights)

        return DetailedMakeUpSuggestion(
            id=f"suggestion-{candidate.id}",
            class_id=candidate.id,
            teacher_id=candidate.teacher_id,
            teacher_name=candidate.teacher_name,
            course_type=candidate.course_type,
            start_time=session.start,
            end_time=session.end,
            location=candidate.location,
            is_online=candidate.is_online,
            current_enrollment=candidate.current_enrollment,
            capacity=candidate.capacity,
            available_spots=candidate.available_spots,
            content_compatibility_score=scores['content_compatibility'],
            schedule_preference_score=scores['schedule_preference'],
            teacher_compatibility_score=scores['teacher_compatibility'],
            class_size_preference_score=scores['class_size_preference'],
            location_preference_score=scores['location_preference'],
            timing_preference_score=scores['timing_preference'],
            availability_score=scores['availability_score'],
            overall_compatibility_score=overall,
            recommendation_strength=scoring.recommendation_tier(overall, self.config.thresholds),
            benefits=tuple(benefits_for(candidate, scores)),
            considerations=tuple(considerations_for(candidate, scores)),
        )

    def _passes(self, s: DetailedMakeUpSuggestion, constraints: SuggestionConstraints) -> bool:
        t = self.config.thresholds
        min_overall = max(t.min_overall_score, constraints.min_compatibility_score or 0.0)
        return (
            s.overall_compatibility_score >= min_overall
            and s.content_compatibility_score >= t.min_content_score
            and s.schedule_preference_score >= t.min_schedule_score
        )

    def _diversify(self, ranked: List[DetailedMakeUpSuggestion], limit: int) -> List[DetailedMakeUpSuggestion]:
        final = []
        per_teacher: Dict[str, int] = defaultdict(int)
        per_day: Dict[Tuple[int, int, int], int] = defaultdict(int)

        for s in ranked:
            if len(final) >= limit:
                break
            day = s.start_time.timetuple()[:3]
            if per_teacher[s.teacher_id] >= self.config.max_suggestions_per_teacher:
                continue
            if per_day[day] >= self.config.max_suggestions_per_day:
                continue
            final.append(s)
            per_teacher[s.teacher_id] += 1
            per_day[day] += 1
        return final


def benefits_for(candidate: CandidateClass, scores: Dict[str, float]) -> List[str]:
    benefits = []
    if scores['content_compatibility'] > 0.8:
        benefits.append('Excellent content match with your original class')
    if scores['schedule_preference'] > 0.8:
        benefits.append('Matches your preferred schedule')
    if scores['teacher_compatibility'] > 0.8:
        benefits.append('Taught by your preferred teacher')
    if scores['class_size_preference'] > 0.8:
        benefits.append('Ideal class size for your learning style')
    if candidate.is_online:
        benefits.append('Online format - no travel required')
    if candidate.available_spots > 3:
        benefits.append('Plenty of available spots')
    return benefits or ['Good alternative option available']


def considerations_for(candidate: CandidateClass, scores: Dict[str, float]) -> List[str]:
    considerations = []
    if scores['content_compatibility'] < 0.6:
        considerations.append('Content may differ from your original class')
    if scores['schedule_preference'] < 0.6:
        considerations.append('Schedule may not match your preferred times')
    if scores['teacher_compatibility'] < 0.6:
        considerations.append('Different teacher than preferred')
    if candidate.available_spots == 1:
        considerations.append('Limited availability - book soon')
    if not candidate.is_online and candidate.location:
        considerations.append('In-person class - consider travel time')
    return considerations
