import logging
import threading
import time
from collections import OrderedDict
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import DEFAULT_CONFIG, SchedulingConfig
from .conflicts import ConflictDetector, ConflictResolver, find_alternative_slot, involving
from .data_store import DataStore
from .errors import CommitConflictError, DataStoreError, RequestAborted, ValidationError
from .model import (
    PRIORITIES, REQUEST_TYPES, CommitReport, ConflictResolution, CourseRecord, HealthStatus,
    OptimizationConstraints, OptimizationSolution, ScheduledClass, SchedulingConflict,
    SchedulingDecision, SchedulingError, SchedulingMetrics, SchedulingRequest, SchedulingResult,
    StudentProgress, TeacherProfile, TimeSlot,
)
from .optimizer import OptimizationEngine, class_to_decision
from .recommendations import RecommendationBuilder, rank_slots
from .scoring import default_progress, normalized_slot_score, slot_confidence, slot_score
from .timegrid import TimeGrid, slots_overlap

logger = logging.getLogger(__name__)

CancelCheck = Callable[[], bool]

# Request ids kept for get_request_status()
REQUEST_HISTORY_SIZE = 1000


class SchedulingService:
    """
    Turns scheduling requests into tentative class assignments.

    Configuration is an immutable snapshot read once per call; updates build a
    new validated object and swap it under a lock. Nothing reaches the store
    until `commit()`.
    """

    def __init__(self, store: DataStore, config: SchedulingConfig = DEFAULT_CONFIG,
                 clock: Callable[[], float] = time.monotonic):
        self.store = store
        self._config = config.validate()
        self._clock = clock
        self.detector = ConflictDetector()
        self.resolver = ConflictResolver()

        self._lock = threading.Lock()
        self._active = set()
        self._history: "OrderedDict[str, str]" = OrderedDict()
        self._total = 0
        self._failed = 0
        self._total_ms = 0.0
        self._peak_queue = 0
        self._started = clock()

    # --- configuration ---

    @property
    def config(self) -> SchedulingConfig:
        return self._config

    def update_configuration(self, partial: Dict[str, Any]) -> SchedulingConfig:
        """Raises ConfigurationError and keeps the current configuration when `partial` is invalid."""
        with self._lock:
            new_config = self._config.merged(partial)
            self._config = new_config
        logger.info("Scheduling configuration updated: %s", sorted(partial))
        return new_config

    # --- state ---

    @property
    def status(self) -> str:
        with self._lock:
            return 'processing' if self._active else 'idle'

    def get_request_status(self, request_id: str) -> Optional[str]:
        with self._lock:
            if request_id in self._active:
                return 'processing'
            return self._history.get(request_id)

    def get_health_status(self) -> HealthStatus:
        with self._lock:
            total, failed, queue = self._total, self._failed, len(self._active)
            avg_ms = self._total_ms / total if total else 0.0
        success_rate = (total - failed) / total if total else 1.0

        if success_rate >= 0.95 and queue < 10:
            status = 'healthy'
        elif success_rate >= 0.80 and queue < 50:
            status = 'degraded'
        else:
            status = 'unhealthy'

        return HealthStatus(
            status=status,
            success_rate=success_rate,
            queue_depth=queue,
            total_requests=total,
            failed_requests=failed,
            average_processing_ms=avg_ms,
            uptime_seconds=self._clock() - self._started,
        )

    @property
    def peak_queue_depth(self) -> int:
        return self._peak_queue

    def _begin(self, request_id: str):
        with self._lock:
            self._active.add(request_id)
            self._peak_queue = max(self._peak_queue, len(self._active))

    def _finish(self, request_id: str, success: bool, elapsed_ms: float):
        with self._lock:
            self._active.discard(request_id)
            self._total += 1
            if not success:
                self._failed += 1
            self._total_ms += elapsed_ms
            self._history[request_id] = 'completed' if success else 'failed'
            while len(self._history) > REQUEST_HISTORY_SIZE:
                self._history.popitem(last=False)

    # --- scheduling ---

    def schedule(self, request: SchedulingRequest, should_cancel: Optional[CancelCheck] = None) -> SchedulingResult:
        config = self._config
        course = self._validate(request, config)

        self._begin(request.id)
        started_at = datetime.now(timezone.utc)
        t0 = self._clock()
        deadline = t0 + config.max_processing_seconds

        def checkpoint(phase: str):
            if should_cancel is not None and should_cancel():
                raise RequestAborted(f"Request {request.id} cancelled during {phase}", 'cancelled')
            if self._clock() > deadline:
                raise RequestAborted(
                    f"Request {request.id} exceeded {config.max_processing_seconds}s during {phase}", 'timeout')

        logger.info("Scheduling request %s: %d students, course %s",
                    request.id, len(request.student_ids), request.course_id)
        try:
            result = self._run(request, course, config, checkpoint)
        except RequestAborted as e:
            logger.warning(e.message)
            result = self._failed_result(request, e.category.upper(), e.message, e.category)
        except Exception as e:
            logger.exception("Scheduling request %s failed", request.id)
            result = self._failed_result(request, 'ALGORITHM_ERROR', str(e), 'algorithm')

        elapsed_ms = (self._clock() - t0) * 1000
        result.started_at = started_at
        result.completed_at = datetime.now(timezone.utc)
        result.metrics.processing_time_ms = elapsed_ms
        self._finish(request.id, result.success, elapsed_ms)

        logger.info("Request %s %s in %.1f ms", request.id, result.status, elapsed_ms)
        return result

    def _validate(self, request: SchedulingRequest, config: SchedulingConfig) -> CourseRecord:
        max_students = config.constraints.max_students_per_class

        if not request.student_ids:
            raise ValidationError("At least one student ID is required")
        if not request.course_id:
            raise ValidationError("Course ID is required")
        if len(request.student_ids) > max_students:
            raise ValidationError(f"Cannot schedule more than {max_students} students per class")
        if len(set(request.student_ids)) != len(request.student_ids):
            raise ValidationError("Duplicate student IDs are not allowed")
        if request.type not in REQUEST_TYPES:
            raise ValidationError(f"Invalid request type: {request.type}")
        if request.priority not in PRIORITIES:
            raise ValidationError(f"Invalid priority: {request.priority}")

        for student_id in request.student_ids:
            if self.store.get_student(student_id) is None:
                raise ValidationError(f"Student not found: {student_id}")
        course = self.store.get_course(request.course_id)
        if course is None:
            raise ValidationError(f"Course not found: {request.course_id}")
        pinned = request.constraints.teacher_id if request.constraints else None
        if pinned and self.store.get_teacher(pinned) is None:
            raise ValidationError(f"Teacher not found: {pinned}")
        return course

    def _run(self, request: SchedulingRequest, course: CourseRecord, config: SchedulingConfig,
             checkpoint: Callable[[str], None]) -> SchedulingResult:
        checkpoint('data gathering')
        progress = self._gather_progress(request)
        teachers = self._gather_teachers(request)
        fixed = [replace(c, fixed=True) for c in self.store.list_scheduled_classes(
            [t.id for t in teachers], request.student_ids)]

        checkpoint('slot enumeration')
        grid = TimeGrid.from_config(config.constraints)
        slots = grid.enumerate_slots(request.constraints, self.store.get_slot_enrollment)
        if course.is_online:
            slots = [replace(s, location='online') for s in slots]

        weights = config.scoring_weights
        scores = {s.key: slot_score(s, progress, weights, request.preferred_time_slots) for s in slots}
        eligible = [s for s in slots if self._slot_is_open(s, request, teachers, fixed)]

        checkpoint('slot selection')
        scheduled: List[ScheduledClass] = []
        best = self._select_slot(eligible, scores)
        if best is not None:
            scheduled.append(self._tentative_class(request, course, best, scores[best.key], teachers, fixed, config))

        checkpoint('conflict detection')
        batch = fixed + scheduled
        tentative_ids = [c.id for c in scheduled]
        conflicts = self.detector.detect(batch)
        # only conflicts touching this request's classes decide its outcome;
        # the rest are already in the store and surface as recommendations
        own = involving(conflicts, tentative_ids)
        if len(own) < len(conflicts):
            logger.warning("Request %s: %d conflicts between committed classes left as they are",
                           request.id, len(conflicts) - len(own))
        unresolved = own
        if own and config.enable_conflict_resolution:
            outcome = self.resolver.resolve(batch, own, eligible,
                                            scorer=lambda slot, c: scores.get(slot.key, 0.0))
            unresolved = outcome.unresolved
            for c in scheduled:
                if c.id in outcome.moved:
                    self._note_move(c, scores.get(c.time_slot.key, 0.0), config)

        optimization: Optional[OptimizationSolution] = None
        if config.enable_optimization and scheduled:
            checkpoint('optimization')
            optimization = self.optimize(
                [class_to_decision(c) for c in scheduled],
                OptimizationConstraints(
                    teachers=teachers,
                    performance_history=self._gather_history(request.student_ids),
                    candidate_slots=eligible,
                    fixed_classes=fixed,
                    balance_workload=config.optimization.balance_workload,
                    optimize_timing=config.optimization.optimize_timing,
                    alternative_count=config.optimization.alternative_count,
                ),
            )
            scheduled = optimization.scheduled_classes
            unresolved = optimization.unresolved_conflicts

        checkpoint('recommendations')
        ranked = [(s, normalized_slot_score(score, weights))
                  for s, score in rank_slots([(s, scores[s.key]) for s in eligible])]
        recommendations = RecommendationBuilder(self.store, config.constraints.max_recommendations).build(
            request, scheduled, conflicts, ranked)

        enrolled = sum(c.time_slot.capacity.current_enrollment + len(c.student_ids) for c in scheduled)
        capacity = sum(c.time_slot.capacity.max_students for c in scheduled)
        metrics = SchedulingMetrics(
            students_processed=len(request.student_ids),
            classes_scheduled=len(scheduled),
            conflicts_detected=len(conflicts),
            conflicts_resolved=max(0, len(own) - len(unresolved)),
            unresolved_conflicts=len(unresolved),
            resource_utilization=enrolled / capacity if capacity else 0.0,
            iterations_performed=len(slots),
            optimization_applied=optimization is not None,
        )

        result = SchedulingResult(
            request_id=request.id,
            success=True,
            status='completed',
            scheduled_classes=scheduled,
            conflicts=conflicts,
            unresolved_conflicts=unresolved,
            recommendations=recommendations,
            metrics=metrics,
            optimization=optimization,
        )

        critical = [c for c in unresolved if c.severity == 'critical']
        if critical:
            result.success, result.status = False, 'failed'
            result.error = SchedulingError(
                code='UNRESOLVED_CONFLICT',
                message=f"{len(critical)} critical conflicts could not be resolved",
                category='conflict',
            )
        elif not scheduled:
            result.success, result.status = False, 'failed'
            result.error = SchedulingError(
                code='NO_AVAILABLE_SLOT',
                message='No time slot has capacity and an available teacher for this request',
                category='conflict',
            )
        return result

    def _gather_progress(self, request: SchedulingRequest) -> List[StudentProgress]:
        progress = []
        for student_id in request.student_ids:
            try:
                snapshot = self.store.get_student_progress(student_id, request.course_id)
            except DataStoreError as e:
                logger.warning("Progress unavailable for student %s, using defaults: %s", student_id, e)
                snapshot = None
            progress.append(snapshot or default_progress(student_id, request.course_id))
        return progress

    def _gather_teachers(self, request: SchedulingRequest) -> List[TeacherProfile]:
        teachers = self.store.list_course_teachers(request.course_id)
        pinned = request.constraints.teacher_id if request.constraints else None
        if pinned:
            teachers = [t for t in teachers if t.id == pinned]
            if not teachers:
                teachers = [self.store.get_teacher(pinned)]
        return teachers

    def _gather_history(self, student_ids) -> Dict[str, list]:
        history = {}
        for student_id in student_ids:
            try:
                records = self.store.get_performance_history(student_id)
            except DataStoreError as e:
                logger.warning("Performance history unavailable for student %s: %s", student_id, e)
                continue
            if records:
                history[student_id] = records
        return history

    @staticmethod
    def _teacher_free(teacher: TeacherProfile, slot: TimeSlot, group_size: int, fixed: List[ScheduledClass]) -> bool:
        if not teacher.is_available(slot):
            return False
        if teacher.max_class_size and group_size > teacher.max_class_size:
            return False
        return not any(c.teacher_id == teacher.id and slots_overlap(c.time_slot, slot) for c in fixed)

    def _slot_is_open(self, slot: TimeSlot, request: SchedulingRequest,
                      teachers: List[TeacherProfile], fixed: List[ScheduledClass]) -> bool:
        group_size = len(request.student_ids)
        if slot.capacity.available_spots < group_size:
            return False
        students = set(request.student_ids)
        if any(students.intersection(c.student_ids) and slots_overlap(c.time_slot, slot) for c in fixed):
            return False
        if teachers and not any(self._teacher_free(t, slot, group_size, fixed) for t in teachers):
            return False
        return True

    @staticmethod
    def _select_slot(eligible: List[TimeSlot], scores: Dict[Tuple[int, str], float]) -> Optional[TimeSlot]:
        best, best_score = None, None
        for slot in sorted(eligible, key=lambda s: s.key):
            if best_score is None or scores[slot.key] > best_score:
                best, best_score = slot, scores[slot.key]
        return best

    def _tentative_class(self, request: SchedulingRequest, course: CourseRecord, slot: TimeSlot, score: float,
                         teachers: List[TeacherProfile], fixed: List[ScheduledClass],
                         config: SchedulingConfig) -> ScheduledClass:
        group_size = len(request.student_ids)
        booked: Dict[str, int] = {t.id: 0 for t in teachers}
        for c in fixed:
            if c.teacher_id in booked:
                booked[c.teacher_id] += c.duration_minutes

        free = [t for t in teachers if self._teacher_free(t, slot, group_size, fixed)]
        teacher = min(free, key=lambda t: (booked[t.id], t.id)) if free else None

        rationale = f"Best scoring slot on day {slot.day_of_week} at {slot.start_time}"
        if teacher:
            rationale += f" with teacher {teacher.id} ({booked[teacher.id]} minutes booked)"

        return ScheduledClass(
            id=f"class-{request.id}",
            course_id=request.course_id,
            teacher_id=teacher.id if teacher else None,
            student_ids=list(request.student_ids),
            time_slot=slot,
            class_type='individual' if group_size == 1 else 'group',
            confidence_score=slot_confidence(score, config.scoring_weights),
            rationale=rationale,
            priority=request.priority,
            duration_minutes=course.duration_minutes,
        )

    @staticmethod
    def _note_move(c: ScheduledClass, score: float, config: SchedulingConfig):
        slot = c.time_slot
        c.confidence_score = slot_confidence(score, config.scoring_weights)
        c.rationale += f"; moved to day {slot.day_of_week} at {slot.start_time} to resolve a conflict"

    @staticmethod
    def _failed_result(request: SchedulingRequest, code: str, message: str, category: str) -> SchedulingResult:
        return SchedulingResult(
            request_id=request.id,
            success=False,
            status='failed',
            error=SchedulingError(code=code, message=message, category=category),
        )

    # --- optimization ---

    def optimize(self, decisions: List[SchedulingDecision], constraints: OptimizationConstraints) -> OptimizationSolution:
        return OptimizationEngine(self._config.optimization, self.detector, self.resolver).optimize(decisions, constraints)

    def constraints_for(self, decisions: List[SchedulingDecision], **overrides) -> OptimizationConstraints:
        """Optimization context for `decisions` read from the store: teachers, history, free grid, commitments."""
        config = self._config
        teachers: Dict[str, TeacherProfile] = {}
        for course_id in sorted({d.course_id for d in decisions}):
            for t in self.store.list_course_teachers(course_id):
                teachers.setdefault(t.id, t)

        student_ids = sorted({s for d in decisions for s in d.composition.student_ids})
        history = self._gather_history(student_ids)

        decision_ids = {d.id for d in decisions}
        fixed = [
            replace(c, fixed=True)
            for c in self.store.list_scheduled_classes(list(teachers), student_ids)
            if c.id not in decision_ids
        ]
        grid = TimeGrid.from_config(config.constraints)

        params = dict(
            teachers=list(teachers.values()),
            performance_history=history,
            candidate_slots=grid.enumerate_slots(enrollment_lookup=self.store.get_slot_enrollment),
            fixed_classes=fixed,
            balance_workload=config.optimization.balance_workload,
            optimize_timing=config.optimization.optimize_timing,
            alternative_count=config.optimization.alternative_count,
        )
        params.update({k: v for k, v in overrides.items() if v is not None})
        return OptimizationConstraints(**params)

    # --- commit ---

    def commit(self, result: SchedulingResult) -> CommitReport:
        """
        Writes each scheduled class through the store. A class rejected for a
        conflict is moved once to another free slot and retried; a second
        rejection is reported as a constraint_violation conflict.
        """
        if not result.success:
            raise ValidationError(f"Cannot commit failed result {result.request_id}")

        config = self._config
        grid = TimeGrid.from_config(config.constraints)
        report = CommitReport()
        blocked = set()

        for cls in result.scheduled_classes:
            try:
                self._commit_one(cls)
                report.committed.append(cls)
                continue
            except CommitConflictError as e:
                logger.warning("Commit of class %s rejected: %s", cls.id, e.message)
                first_error = e

            blocked.add(cls.time_slot.key)
            alternative = self._relocation_slot(cls, result, grid, blocked)
            if alternative is None:
                report.unresolved_conflicts.append(self._commit_conflict(cls, first_error.message))
                continue

            moved = replace(cls, time_slot=alternative,
                            rationale=f"{cls.rationale}; moved after commit conflict".lstrip('; '))
            report.retried.append(cls.id)
            try:
                self._commit_one(moved)
                report.committed.append(moved)
            except CommitConflictError as e:
                logger.warning("Retry of class %s rejected: %s", cls.id, e.message)
                blocked.add(alternative.key)
                report.unresolved_conflicts.append(self._commit_conflict(moved, e.message))

        logger.info("Committed %d classes for %s (%d retried, %d unresolved)",
                    len(report.committed), result.request_id, len(report.retried),
                    len(report.unresolved_conflicts))
        return report

    def _commit_one(self, cls: ScheduledClass):
        outcome = self.store.commit_schedule(cls)
        if not outcome.accepted:
            raise CommitConflictError(outcome.reason or f"Slot {cls.time_slot.id} is no longer available", cls.id)

    def _relocation_slot(self, cls: ScheduledClass, result: SchedulingResult, grid: TimeGrid, blocked) -> Optional[TimeSlot]:
        teacher = self.store.get_teacher(cls.teacher_id) if cls.teacher_id else None
        slots = [
            replace(s, location=cls.time_slot.location)
            for s in grid.enumerate_slots(enrollment_lookup=self.store.get_slot_enrollment)
            if teacher is None or teacher.is_available(s)
        ]
        context = self.store.list_scheduled_classes([cls.teacher_id] if cls.teacher_id else [], cls.student_ids)
        context += [c for c in result.scheduled_classes if c.id != cls.id]
        return find_alternative_slot(cls, context, slots, blocked=blocked)

    @staticmethod
    def _commit_conflict(cls: ScheduledClass, reason: str) -> SchedulingConflict:
        return SchedulingConflict(
            id=f"constraint_violation:{cls.id}:{cls.time_slot.id}",
            type='constraint_violation',
            severity='high',
            affected_entity_ids=[cls.id],
            description=f"Class {cls.id} could not be committed: {reason}",
            resolutions=[ConflictResolution('reschedule', 'Schedule the request again', 0.5)],
            auto_resolvable=False,
            entity_id=cls.id,
            slot_key=cls.time_slot.key,
        )
