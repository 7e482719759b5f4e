import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from itertools import combinations
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .model import (
    ConflictResolution, ScheduledClass, SchedulingConflict, TimeSlot, priority_weight,
)
from .scoring import availability_scorer
from .timegrid import slots_overlap

logger = logging.getLogger(__name__)

SlotScorer = Callable[[TimeSlot, ScheduledClass], float]

ONLINE = 'online'


def _slot_label(key: Tuple[int, str]) -> str:
    return f"{key[0]}-{key[1].replace(':', '')}"


def _is_physical(location: Optional[str]) -> bool:
    return bool(location) and location.strip().lower() != ONLINE


class ConflictDetector:
    """
    Finds resource conflicts in a batch of classes (committed + tentative).
    Output order is deterministic: double bookings, overlaps, rooms, capacity.
    """

    def detect(self, classes: List[ScheduledClass]) -> List[SchedulingConflict]:
        active = [c for c in classes if c.status == 'scheduled']
        conflicts: List[SchedulingConflict] = []

        # Build maps once
        teacher_schedule: Dict[Tuple[str, Tuple[int, str]], List[ScheduledClass]] = defaultdict(list)
        student_schedule: Dict[Tuple[str, Tuple[int, str]], List[ScheduledClass]] = defaultdict(list)
        by_day: Dict[int, List[ScheduledClass]] = defaultdict(list)

        for c in active:
            key = c.time_slot.key
            if c.teacher_id:
                teacher_schedule[(c.teacher_id, key)].append(c)
            for s in c.student_ids:
                student_schedule[(s, key)].append(c)
            by_day[c.time_slot.day_of_week].append(c)

        for (teacher_id, key), group in sorted(teacher_schedule.items()):
            if len(group) > 1:
                conflicts.append(self._double_booking('teacher', teacher_id, key, group))

        for (student_id, key), group in sorted(student_schedule.items()):
            if len(group) > 1:
                conflicts.append(self._double_booking('student', student_id, key, group))

        room_conflicts = []
        for day in sorted(by_day):
            for a, b in combinations(sorted(by_day[day], key=lambda c: (c.time_slot.start_time, c.id)), 2):
                if not slots_overlap(a.time_slot, b.time_slot):
                    continue
                if a.time_slot.key != b.time_slot.key:
                    shared = self._shared_entity(a, b)
                    if shared:
                        conflicts.append(self._time_overlap(a, b, shared))
                if (_is_physical(a.time_slot.location)
                        and a.time_slot.location == b.time_slot.location):
                    room_conflicts.append(self._room_conflict(a, b))
        conflicts.extend(room_conflicts)

        for c in active:
            if len(c.student_ids) > c.time_slot.capacity.max_students:
                conflicts.append(self._capacity_exceeded(c))

        if conflicts:
            logger.info("Detected %d conflicts across %d classes", len(conflicts), len(active))
        return conflicts

    @staticmethod
    def _shared_entity(a: ScheduledClass, b: ScheduledClass) -> Optional[str]:
        if a.teacher_id and a.teacher_id == b.teacher_id:
            return a.teacher_id
        shared = sorted(set(a.student_ids).intersection(b.student_ids))
        return shared[0] if shared else None

    @staticmethod
    def _double_booking(kind: str, entity_id: str, key, group: List[ScheduledClass]) -> SchedulingConflict:
        resolutions = [ConflictResolution('reschedule', 'Move one class to a free time slot', 0.8)]
        if kind == 'teacher':
            resolutions.append(ConflictResolution('reassign_teacher', 'Assign another qualified teacher', 0.6))
        return SchedulingConflict(
            id=f"{kind}_double_booking:{entity_id}:{_slot_label(key)}",
            type=f"{kind}_double_booking",
            severity='critical',
            affected_entity_ids=sorted(c.id for c in group),
            description=f"{kind.capitalize()} {entity_id} is booked {len(group)} times on day {key[0]} at {key[1]}",
            resolutions=resolutions,
            auto_resolvable=True,
            entity_id=entity_id,
            slot_key=key,
        )

    @staticmethod
    def _time_overlap(a: ScheduledClass, b: ScheduledClass, entity_id: str) -> SchedulingConflict:
        return SchedulingConflict(
            id=f"time_overlap:{entity_id}:{a.id}:{b.id}",
            type='time_overlap',
            severity='high',
            affected_entity_ids=[a.id, b.id],
            description=(f"Classes {a.id} ({a.time_slot.start_time}-{a.time_slot.end_time}) and "
                         f"{b.id} ({b.time_slot.start_time}-{b.time_slot.end_time}) overlap for {entity_id}"),
            resolutions=[ConflictResolution('reschedule', 'Shift one class to a non-overlapping slot', 0.7)],
            auto_resolvable=True,
            entity_id=entity_id,
            slot_key=a.time_slot.key,
        )

    @staticmethod
    def _room_conflict(a: ScheduledClass, b: ScheduledClass) -> SchedulingConflict:
        location = a.time_slot.location
        return SchedulingConflict(
            id=f"room_conflict:{location}:{a.id}:{b.id}",
            type='room_conflict',
            severity='medium',
            affected_entity_ids=[a.id, b.id],
            description=f"Room {location} is used by {a.id} and {b.id} at the same time",
            resolutions=[
                ConflictResolution('change_location', 'Use a different room', 0.7),
                ConflictResolution('reschedule', 'Move one class to a free time slot', 0.6),
            ],
            auto_resolvable=True,
            entity_id=location,
            slot_key=a.time_slot.key,
        )

    @staticmethod
    def _capacity_exceeded(c: ScheduledClass) -> SchedulingConflict:
        cap = c.time_slot.capacity.max_students
        return SchedulingConflict(
            id=f"capacity_exceeded:{c.id}:{_slot_label(c.time_slot.key)}",
            type='capacity_exceeded',
            severity='high',
            affected_entity_ids=[c.id],
            description=f"Class {c.id} has {len(c.student_ids)} students for {cap} seats",
            resolutions=[ConflictResolution('split_class', f"Split into classes of at most {cap} students", 0.9)],
            auto_resolvable=False,
            entity_id=c.id,
            slot_key=c.time_slot.key,
        )


def involving(conflicts: Iterable[SchedulingConflict], class_ids: Iterable[str]) -> List[SchedulingConflict]:
    """Conflicts that affect at least one of `class_ids`."""
    ids = set(class_ids)
    return [c for c in conflicts if ids.intersection(c.affected_entity_ids)]


@dataclass
class ResolutionOutcome:
    resolved: List[SchedulingConflict] = field(default_factory=list)
    unresolved: List[SchedulingConflict] = field(default_factory=list)
    moved: List[str] = field(default_factory=list)


class ConflictResolver:
    """
    Single bounded pass over the conflict list. Relocates the weakest movable
    class of each conflict to the best free candidate slot. Classes are
    modified in place; fixed classes are never moved.
    """

    def resolve(
        self,
        classes: List[ScheduledClass],
        conflicts: List[SchedulingConflict],
        candidate_slots: List[TimeSlot],
        scorer: Optional[SlotScorer] = None,
    ) -> ResolutionOutcome:
        scorer = scorer or availability_scorer
        by_id = {c.id: c for c in classes}
        outcome = ResolutionOutcome()

        for conflict in conflicts:
            if not conflict.auto_resolvable:
                outcome.unresolved.append(conflict)
                continue

            movable = [by_id[i] for i in conflict.affected_entity_ids if i in by_id and not by_id[i].fixed]
            # A group of n bookings needs at most n - 1 moves
            while movable and self._still_holds(conflict, by_id):
                target = min(movable, key=lambda c: (priority_weight(c.priority), c.confidence_score, c.id))
                movable.remove(target)
                slot = find_alternative_slot(target, classes, candidate_slots, scorer)
                if slot is None:
                    logger.warning("No free slot to resolve %s (class %s)", conflict.id, target.id)
                    break
                logger.info("Moving class %s from %s to %s to resolve %s",
                            target.id, target.time_slot.id, slot.id, conflict.type)
                target.time_slot = slot
                outcome.moved.append(target.id)

            if self._still_holds(conflict, by_id):
                outcome.unresolved.append(conflict)
            else:
                outcome.resolved.append(conflict)

        return outcome

    @staticmethod
    def _still_holds(conflict: SchedulingConflict, by_id: Dict[str, ScheduledClass]) -> bool:
        affected = [by_id[i] for i in conflict.affected_entity_ids if i in by_id]
        return any(slots_overlap(a.time_slot, b.time_slot) for a, b in combinations(affected, 2))


def find_alternative_slot(
    target: ScheduledClass,
    classes: Iterable[ScheduledClass],
    candidate_slots: List[TimeSlot],
    scorer: Optional[SlotScorer] = None,
    blocked: Optional[Set[Tuple[int, str]]] = None,
) -> Optional[TimeSlot]:
    """
    Best candidate slot not overlapping any other scheduled class of the batch,
    with room for the class's students. Ties keep grid order.
    """
    scorer = scorer or availability_scorer
    blocked = blocked or set()
    others = [c for c in classes if c.id != target.id and c.status == 'scheduled']
    needed = len(target.student_ids)

    best, best_score = None, None
    for slot in candidate_slots:
        if slot.key in blocked or slot.key == target.time_slot.key:
            continue
        if slot.capacity.available_spots < needed:
            continue
        if any(slots_overlap(slot, o.time_slot) for o in others):
            continue
        score = scorer(slot, target)
        if best_score is None or score > best_score:
            best, best_score = slot, score

    if best is None:
        return None
    # Keep the class's own room when the grid slot has none
    return replace(best, location=best.location or target.time_slot.location)
