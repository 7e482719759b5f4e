import copy
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Tuple

from .config import OptimizationConfig
from .conflicts import ConflictDetector, ConflictResolver, involving
from .model import (
    ClassComposition, OptimizationConstraints, OptimizationMetrics, OptimizationSolution,
    PerformanceRecord, ScheduledClass, SchedulingConflict, SchedulingDecision, TeacherProfile,
    TimeSlot, priority_weight,
)
from .scoring import peak_hour_score
from .timegrid import DAY_NAMES, slots_overlap

logger = logging.getLogger(__name__)

STRATEGIES = ('time_focused', 'resource_focused', 'balance_focused')

RatingBuckets = Dict[Tuple[int, int], float]


@dataclass
class WorkloadBalance:
    assignments: Dict[str, List[ClassComposition]]
    workload_distribution: Dict[str, int]
    balance_score: float
    unassigned: List[str] = field(default_factory=list)


@dataclass
class TimingPlan:
    optimal_slots: Dict[str, TimeSlot]
    predicted_ratings: Dict[str, float]
    recommendations: List[str]


def decision_to_class(decision: SchedulingDecision) -> ScheduledClass:
    comp = decision.composition
    return ScheduledClass(
        id=decision.id,
        course_id=decision.course_id,
        teacher_id=decision.teacher_id,
        student_ids=list(comp.student_ids),
        time_slot=decision.time_slot,
        class_type=comp.class_type,
        confidence_score=decision.confidence_score,
        rationale=decision.rationale,
        priority=comp.scheduling_priority,
        duration_minutes=comp.recommended_duration,
    )


def class_to_decision(c: ScheduledClass, content_focus: Optional[List[str]] = None,
                      teacher_requirements: Optional[List[str]] = None) -> SchedulingDecision:
    return SchedulingDecision(
        id=c.id,
        course_id=c.course_id,
        composition=ClassComposition(
            id=f"comp-{c.id}",
            student_ids=list(c.student_ids),
            content_focus=list(content_focus or []),
            class_type=c.class_type,
            recommended_duration=c.duration_minutes,
            scheduling_priority=c.priority,
            teacher_requirements=list(teacher_requirements or []),
        ),
        teacher_id=c.teacher_id,
        time_slot=c.time_slot,
        confidence_score=c.confidence_score,
        rationale=c.rationale,
    )


def balance_score(workloads: List[float]) -> float:
    """100 - coefficient of variation (in %), clamped to [0, 100]."""
    if not workloads:
        return 100.0
    mean = sum(workloads) / len(workloads)
    if mean <= 0:
        return 100.0
    variance = sum((w - mean) ** 2 for w in workloads) / len(workloads)
    return max(0.0, min(100.0, 100 - math.sqrt(variance) / mean * 100))


def rating_buckets(history: List[PerformanceRecord]) -> RatingBuckets:
    """Average rating per (ISO weekday, hour)."""
    grouped = defaultdict(list)
    for record in history:
        grouped[(record.scheduled_time.isoweekday(), record.scheduled_time.hour)].append(record.rating)
    return {key: sum(r) / len(r) for key, r in grouped.items()}


def _composition_key(comp: ClassComposition, decision_id: str = ''):
    # priority desc, difficulty desc, id asc
    return (-priority_weight(comp.scheduling_priority), -comp.difficulty_level, comp.id, decision_id)


def _teacher_fits(teacher: TeacherProfile, comp: ClassComposition) -> bool:
    if teacher.max_class_size and len(comp.student_ids) > teacher.max_class_size:
        return False
    if comp.teacher_requirements and not all(r in teacher.specializations for r in comp.teacher_requirements):
        return False
    return True


class OptimizationEngine:
    """
    Greedy multi-objective pass over tentative scheduling decisions:
    conflict resolution, workload balancing, timing by historical ratings,
    then metrics and alternative variants. Not globally optimal.
    """

    def __init__(self, config: OptimizationConfig = OptimizationConfig(),
                 detector: Optional[ConflictDetector] = None,
                 resolver: Optional[ConflictResolver] = None):
        self.config = config
        self.detector = detector or ConflictDetector()
        self.resolver = resolver or ConflictResolver()

    # --- public operations ---

    def optimize(self, decisions: List[SchedulingDecision], constraints: OptimizationConstraints) -> OptimizationSolution:
        fixed = [replace(c, fixed=True) for c in copy.deepcopy(constraints.fixed_classes)]
        classes = [decision_to_class(d) for d in copy.deepcopy(decisions) if d.time_slot is not None]
        comps = {d.id: d.composition for d in decisions}
        batch = fixed + classes
        buckets = {s: rating_buckets(h) for s, h in constraints.performance_history.items()}

        conflicts = self.detector.detect(batch)
        if conflicts:
            self.resolver.resolve(batch, conflicts, constraints.candidate_slots)

        if constraints.balance_workload and constraints.teachers:
            self._rebalance(classes, batch, comps, constraints.teachers, by_count=False)

        if constraints.optimize_timing and buckets:
            self._retime(classes, batch, constraints, self._timing_rank(buckets))

        solution = self._build_solution(classes, batch, decisions, constraints, buckets, 'base')

        if constraints.alternative_count > 0:
            solution.alternative_solutions = self._alternatives(solution, fixed, comps, decisions, constraints, buckets)

        logger.info(
            "Optimized %d decisions: confidence %.2f, %d unresolved, %d alternatives",
            len(decisions), solution.confidence_score, len(solution.unresolved_conflicts),
            len(solution.alternative_solutions),
        )
        return solution

    def balance_teacher_workload(self, teachers: List[TeacherProfile], compositions: List[ClassComposition]) -> WorkloadBalance:
        assignments: Dict[str, List[ClassComposition]] = {t.id: [] for t in teachers}
        load: Dict[str, int] = {t.id: 0 for t in teachers}
        unassigned = []

        for comp in sorted(compositions, key=_composition_key):
            suitable = [t for t in teachers if _teacher_fits(t, comp)]
            if not suitable:
                logger.warning("No suitable teacher for composition %s", comp.id)
                unassigned.append(comp.id)
                continue
            chosen = min(suitable, key=lambda t: (load[t.id], t.id))
            assignments[chosen.id].append(comp)
            load[chosen.id] += comp.recommended_duration

        return WorkloadBalance(
            assignments=assignments,
            workload_distribution=load,
            balance_score=balance_score(list(load.values())),
            unassigned=unassigned,
        )

    def optimize_class_timing(self, student_ids: List[str], history: Dict[str, List[PerformanceRecord]],
                              slots: List[TimeSlot]) -> TimingPlan:
        optimal, predicted, notes = {}, {}, []
        for student_id in student_ids:
            buckets = rating_buckets(history.get(student_id, []))
            best, best_rating = None, None
            for slot in slots:
                rating = buckets.get((slot.day_of_week, slot.start_hour), self.config.default_rating)
                if best_rating is None or rating > best_rating:
                    best, best_rating = slot, rating
            if best is None:
                continue
            optimal[student_id] = best
            predicted[student_id] = best_rating
            notes.append(f"Student {student_id} performs best at {best.start_time} on {DAY_NAMES[best.day_of_week]}")
        return TimingPlan(optimal_slots=optimal, predicted_ratings=predicted, recommendations=notes)

    # --- passes ---

    def _rebalance(self, classes, batch, comps, teachers: List[TeacherProfile], by_count: bool):
        load: Dict[str, int] = {t.id: 0 for t in teachers}
        for c in batch:
            if c.fixed and c.teacher_id in load:
                load[c.teacher_id] += 1 if by_count else c.duration_minutes

        assigned: List[ScheduledClass] = [c for c in batch if c.fixed]
        ordered = sorted(classes, key=lambda c: _composition_key(comps[c.id], c.id) if c.id in comps
                         else (-priority_weight(c.priority), 0, c.id, c.id))

        for c in ordered:
            comp = comps.get(c.id) or class_to_decision(c).composition
            cost = 1 if by_count else c.duration_minutes
            suitable = [
                t for t in teachers
                if _teacher_fits(t, comp)
                and t.is_available(c.time_slot)
                and (t.max_weekly_minutes is None or by_count or load[t.id] + cost <= t.max_weekly_minutes)
                and not any(o.teacher_id == t.id and slots_overlap(o.time_slot, c.time_slot) for o in assigned)
            ]
            if suitable:
                chosen = min(suitable, key=lambda t: (load[t.id], t.id))
                if chosen.id != c.teacher_id:
                    logger.debug("Reassigning class %s from %s to %s", c.id, c.teacher_id, chosen.id)
                c.teacher_id = chosen.id
            else:
                logger.warning("No suitable teacher for class %s, keeping %s", c.id, c.teacher_id)
            if c.teacher_id in load:
                load[c.teacher_id] += cost
            assigned.append(c)

    def _timing_rank(self, buckets: RatingBuckets):
        def rank(slot: TimeSlot, c: ScheduledClass) -> Tuple[float, ...]:
            return (self._class_rating(c, slot, buckets),)
        return rank

    def _retime(self, classes, batch, constraints: OptimizationConstraints, rank: Callable):
        """Moves a class only to a free slot that ranks strictly higher than its current one."""
        teachers = {t.id: t for t in constraints.teachers}
        for c in sorted(classes, key=lambda c: c.id):
            current = rank(c.time_slot, c)
            best, best_rank = None, current
            for slot in constraints.candidate_slots:
                if slot.key == c.time_slot.key or not self._is_free(slot, c, batch, teachers):
                    continue
                r = rank(slot, c)
                if r > best_rank:
                    best, best_rank = slot, r
            if best is not None:
                c.time_slot = replace(best, location=best.location or c.time_slot.location)

    @staticmethod
    def _is_free(slot: TimeSlot, c: ScheduledClass, batch, teachers: Dict[str, TeacherProfile]) -> bool:
        if slot.capacity.available_spots < len(c.student_ids):
            return False
        teacher = teachers.get(c.teacher_id)
        if teacher is not None and not teacher.is_available(slot):
            return False
        students = set(c.student_ids)
        location = slot.location or c.time_slot.location
        for o in batch:
            if o.id == c.id or o.status != 'scheduled' or not slots_overlap(slot, o.time_slot):
                continue
            if c.teacher_id and o.teacher_id == c.teacher_id:
                return False
            if students.intersection(o.student_ids):
                return False
            if location and location.lower() != 'online' and o.time_slot.location == location:
                return False
        return True

    def _class_rating(self, c: ScheduledClass, slot: TimeSlot, buckets: RatingBuckets) -> float:
        if not c.student_ids:
            return self.config.default_rating
        key = (slot.day_of_week, slot.start_hour)
        ratings = [buckets.get(s, {}).get(key, self.config.default_rating) for s in c.student_ids]
        return sum(ratings) / len(ratings)

    # --- alternatives ---

    def _alternatives(self, base: OptimizationSolution, fixed, comps, decisions, constraints, buckets) -> List[OptimizationSolution]:
        variants = []
        for strategy in STRATEGIES[:min(constraints.alternative_count, len(STRATEGIES))]:
            classes = copy.deepcopy(base.scheduled_classes)
            batch = copy.deepcopy(fixed) + classes
            if strategy == 'time_focused':
                def rank(slot, c):
                    return (self._class_rating(c, slot, buckets), peak_hour_score(slot.start_hour))
                self._retime(classes, batch, constraints, rank)
            elif strategy == 'resource_focused':
                order = {s.key: i for i, s in enumerate(constraints.candidate_slots)}

                def rank(slot, c):
                    # earlier grid position ranks higher: packs the week from the start
                    return (-order.get(slot.key, len(order)),)
                self._retime(classes, batch, constraints, rank)
            elif strategy == 'balance_focused' and constraints.teachers:
                self._rebalance(classes, batch, comps, constraints.teachers, by_count=True)
            variants.append(self._build_solution(classes, batch, decisions, constraints, buckets, strategy))

        # stable: equal confidence keeps strategy order
        variants.sort(key=lambda s: -s.confidence_score)
        return variants

    # --- metrics ---

    def _build_solution(self, classes, batch, decisions, constraints: OptimizationConstraints,
                        buckets, strategy: str) -> OptimizationSolution:
        # clashes between fixed classes alone are left to the caller
        unresolved = involving(self.detector.detect(batch), [c.id for c in classes])
        distribution = self._workload(batch, constraints.teachers)
        metrics = self._metrics(classes, decisions, unresolved, distribution, buckets, constraints.teachers)
        return OptimizationSolution(
            scheduled_classes=classes,
            unresolved_conflicts=unresolved,
            metrics=metrics,
            confidence_score=self._confidence(metrics, unresolved),
            strategy=strategy,
            workload_distribution=distribution,
        )

    @staticmethod
    def _workload(batch, teachers: List[TeacherProfile]) -> Dict[str, int]:
        distribution = {t.id: 0 for t in teachers}
        for c in batch:
            if c.teacher_id and c.status == 'scheduled':
                distribution[c.teacher_id] = distribution.get(c.teacher_id, 0) + c.duration_minutes
        return distribution

    def _metrics(self, classes, decisions, unresolved: List[SchedulingConflict],
                 distribution, buckets, teachers) -> OptimizationMetrics:
        enrolled = sum(c.time_slot.capacity.current_enrollment + len(c.student_ids) for c in classes)
        capacity = sum(c.time_slot.capacity.max_students for c in classes)
        utilization = min(100.0, 100.0 * enrolled / capacity) if capacity else 0.0

        if buckets and classes:
            # ratings are on a 1-5 scale
            satisfaction = sum(self._class_rating(c, c.time_slot, buckets) for c in classes) / len(classes) / 5 * 100
        else:
            satisfaction = 75.0

        efficiency = 100.0 * len(classes) / len(decisions) if decisions else 100.0

        critical = sum(1 for c in unresolved if c.severity == 'critical')
        conflict = max(0.0, min(100.0, 100.0 - 25 * critical - 10 * (len(unresolved) - critical)))

        balance = balance_score(list(distribution.values())) if teachers else 100.0

        return OptimizationMetrics(
            utilization=utilization,
            satisfaction=min(100.0, satisfaction),
            efficiency=efficiency,
            conflict=conflict,
            balance=balance,
        )

    @staticmethod
    def _confidence(metrics: OptimizationMetrics, unresolved: List[SchedulingConflict]) -> float:
        points = 70
        if not unresolved:
            points += 20
        if metrics.utilization > 80:
            points += 5
        if metrics.satisfaction > 80:
            points += 5
        return min(100, points) / 100
