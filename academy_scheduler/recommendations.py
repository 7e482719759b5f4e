import logging
from typing import List, Optional, Tuple

from .errors import DataStoreError
from .model import (
    PRIORITY_WEIGHTS, ScheduledClass, SchedulingConflict, SchedulingRecommendation,
    SchedulingRequest, TimeSlot,
)
from .scoring import availability
from .timegrid import DAY_NAMES

logger = logging.getLogger(__name__)

CONFLICT_RECOMMENDATION_TYPES = {
    'teacher_double_booking': 'alternative_teacher',
    'student_double_booking': 'alternative_time',
    'time_overlap': 'alternative_time',
    'room_conflict': 'alternative_time',
    'capacity_exceeded': 'defer_scheduling',
    'constraint_violation': 'alternative_time',
}


class RecommendationBuilder:
    """
    Builds follow-up recommendations for a scheduling run. Each generator is
    independent: a store failure in one is logged and the others still run.
    """

    def __init__(self, store, max_recommendations: int = 10):
        self.store = store
        self.max_recommendations = max_recommendations

    def build(
        self,
        request: SchedulingRequest,
        scheduled: List[ScheduledClass],
        conflicts: List[SchedulingConflict],
        ranked_slots: List[Tuple[TimeSlot, float]],
    ) -> List[SchedulingRecommendation]:
        recommendations: List[SchedulingRecommendation] = []

        for conflict in conflicts:
            if conflict.resolutions:
                recommendations.append(self.for_conflict(conflict))

        if request.preferred_time_slots or conflicts:
            taken = {c.time_slot.key for c in scheduled}
            recommendations.extend(self.alternative_times(ranked_slots, taken))

        generators = []
        if not scheduled or (conflicts and request.preferred_class_id):
            generators.append(self.alternative_classes)
        generators.append(self.content_alternatives)

        for generator in generators:
            try:
                recommendations.extend(generator(request))
            except DataStoreError as e:
                logger.warning("Skipping %s recommendations for request %s: %s",
                               generator.__name__, request.id, e)

        recommendations.sort(key=lambda r: (-PRIORITY_WEIGHTS.get(r.priority, 2), -r.confidence_score))
        return recommendations[:self.max_recommendations]

    @staticmethod
    def for_conflict(conflict: SchedulingConflict) -> SchedulingRecommendation:
        critical = conflict.severity == 'critical'
        benefits = ['Eliminates scheduling conflict', 'Improves resource utilization']
        drawbacks = ['May require schedule adjustments']
        description = f"Resolve {conflict.type}: {conflict.description}"

        if conflict.type == 'capacity_exceeded':
            description = 'Class is full - consider alternative classes or waitlist'
            benefits.append('Access to preferred teacher and content')
            drawbacks.append('Waiting time required')

        return SchedulingRecommendation(
            id=f"conflict-res-{conflict.id}",
            type=CONFLICT_RECOMMENDATION_TYPES.get(conflict.type, 'alternative_time'),
            description=description,
            confidence_score=0.8,
            benefits=tuple(benefits),
            drawbacks=tuple(drawbacks),
            complexity='high' if critical else 'medium',
            priority='urgent' if critical else 'high',
            parameters={
                'conflict_id': conflict.id,
                'resolutions': [r.type for r in conflict.resolutions],
            },
        )

    @staticmethod
    def alternative_times(ranked_slots: List[Tuple[TimeSlot, float]], taken, limit: int = 3) -> List[SchedulingRecommendation]:
        """`ranked_slots` holds (slot, normalized score) pairs, best first."""
        recommendations = []
        for slot, score in ranked_slots:
            if slot.key in taken:
                continue
            strong = score > 0.8
            recommendations.append(SchedulingRecommendation(
                id=f"time-alt-{slot.id}",
                type='alternative_time',
                description=f"{DAY_NAMES[slot.day_of_week]} {slot.start_time}-{slot.end_time} "
                            f"has {slot.capacity.available_spots} open spots",
                confidence_score=round(score, 4),
                benefits=('Fits student availability',) if strong else ('Open time slot',),
                drawbacks=() if strong else ('Outside peak learning hours',),
                complexity='low' if strong else 'medium',
                priority='high' if strong else 'medium',
                parameters={'time_slot_id': slot.id, 'day_of_week': slot.day_of_week, 'start_time': slot.start_time},
            ))
            if len(recommendations) >= limit:
                break
        return recommendations

    def alternative_classes(self, request: SchedulingRequest, limit: int = 3) -> List[SchedulingRecommendation]:
        course = self.store.get_course(request.course_id)
        course_type = course.course_type if course else None
        needed = len(request.student_ids)

        candidates = [
            c for c in self.store.list_candidate_classes(course_type)
            if c.id != request.preferred_class_id and c.available_spots >= needed
        ]
        candidates.sort(key=lambda c: (-c.available_spots, c.id))

        recommendations = []
        for c in candidates[:limit]:
            confidence = round(0.5 + 0.4 * availability(c.available_spots, c.capacity), 4)
            strong = confidence > 0.8
            recommendations.append(SchedulingRecommendation(
                id=f"alt-class-{c.id}",
                type='alternative_class',
                description=f"Join class {c.id} with {c.teacher_name} ({c.available_spots} spots left)",
                confidence_score=confidence,
                benefits=('Existing class with open seats', f"Same course type ({c.course_type})"),
                drawbacks=() if c.teacher_id else ('Teacher not assigned yet',),
                complexity='low' if strong else 'medium',
                priority='high' if strong else 'medium',
                parameters={'class_id': c.id, 'teacher_id': c.teacher_id},
            ))
        return recommendations

    def content_alternatives(self, request: SchedulingRequest, per_student: int = 2) -> List[SchedulingRecommendation]:
        recommendations = []
        seen = set()
        for student_id in request.student_ids:
            progress = self.store.get_student_progress(student_id, request.course_id)
            unlearned = progress.unlearned_content if progress else []
            if not unlearned:
                continue

            matches = [
                m for m in self.store.find_similar_content_classes(student_id, request.course_id, unlearned)
                if m.class_id != request.preferred_class_id
            ]
            for match in matches[:per_student]:
                if (student_id, match.class_id) in seen:
                    continue
                seen.add((student_id, match.class_id))
                close = match.similarity > 0.8
                recommendations.append(SchedulingRecommendation(
                    id=f"content-sim-{student_id}-{match.class_id}",
                    type='content_adjustment',
                    description=f"Alternative class with {round(match.similarity * 100)}% content similarity "
                                f"to the learning needs of {student_id}",
                    confidence_score=match.similarity,
                    benefits=(
                        f"{round(match.skill_overlap * 100)}% skill overlap",
                        f"{round(match.objective_alignment * 100)}% objective alignment",
                    ),
                    drawbacks=() if close else ('Some content differences', 'May require additional preparation'),
                    complexity='low' if close else 'medium',
                    priority='high' if close else 'medium',
                    parameters={'class_id': match.class_id, 'student_id': student_id},
                ))
        return recommendations


def rank_slots(scored: List[Tuple[TimeSlot, float]], limit: Optional[int] = None) -> List[Tuple[TimeSlot, float]]:
    """Best first; equal scores keep grid order."""
    ranked = sorted(scored, key=lambda pair: -pair[1])
    return ranked[:limit] if limit else ranked
