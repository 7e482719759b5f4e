from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Dict, Optional, Tuple

REQUEST_TYPES = ('auto_schedule', 'reschedule', 'conflict_resolution', 'optimization', 'content_sync', 'manual_override')
PRIORITIES = ('low', 'medium', 'high', 'urgent')
PRIORITY_WEIGHTS = {'low': 1, 'medium': 2, 'high': 3, 'urgent': 4}
SEVERITY_WEIGHTS = {'low': 1, 'medium': 2, 'high': 3, 'critical': 4}


def priority_weight(priority: str) -> int:
    return PRIORITY_WEIGHTS.get(priority, 2)


@dataclass
class SlotCapacity:
    max_students: int
    min_students: int = 1
    current_enrollment: int = 0

    @property
    def available_spots(self) -> int:
        return max(0, self.max_students - self.current_enrollment)


@dataclass
class TimeSlot:
    id: str
    start_time: str  # "HH:MM"
    end_time: str
    day_of_week: int  # ISO: 1=Monday ... 7=Sunday
    capacity: SlotCapacity
    location: Optional[str] = None  # None = unassigned room, "online" = virtual

    @property
    def key(self) -> Tuple[int, str]:
        return (self.day_of_week, self.start_time)

    @property
    def start_hour(self) -> int:
        return int(self.start_time.split(':')[0])


@dataclass(frozen=True)
class RequestConstraints:
    available_days: Optional[Tuple[int, ...]] = None
    earliest_hour: Optional[int] = None
    latest_hour: Optional[int] = None  # exclusive
    teacher_id: Optional[str] = None


@dataclass(frozen=True)
class SchedulingRequest:
    id: str
    course_id: str
    student_ids: Tuple[str, ...]
    type: str = 'auto_schedule'
    priority: str = 'medium'
    preferred_time_slots: Tuple[TimeSlot, ...] = ()
    constraints: Optional[RequestConstraints] = None
    preferred_class_id: Optional[str] = None


@dataclass
class PerformanceMetrics:
    attendance_rate: float = 0.9
    assignment_completion_rate: float = 0.85
    average_score: float = 75.0
    engagement_level: float = 7.0
    optimal_class_size: int = 4


@dataclass
class StudentProgress:
    student_id: str
    course_id: str = ''
    progress_percentage: float = 0.0
    completed_content: List[str] = field(default_factory=list)
    unlearned_content: List[str] = field(default_factory=list)
    learning_pace: float = 2.0  # lessons per week
    preferred_times: Dict[int, List[str]] = field(default_factory=dict)  # day -> ["09:00-12:00"]
    performance_metrics: PerformanceMetrics = field(default_factory=PerformanceMetrics)


@dataclass
class StudentRecord:
    id: str
    name: str = ''


@dataclass
class CourseRecord:
    id: str
    title: str = ''
    course_type: str = 'Basic'
    duration_minutes: int = 60
    is_online: bool = False


@dataclass
class TeacherProfile:
    id: str
    name: str = ''
    specializations: List[str] = field(default_factory=list)
    max_class_size: Optional[int] = None
    availability: Dict[int, List[int]] = field(default_factory=dict)  # day -> start hours; empty = always
    max_weekly_minutes: Optional[int] = None

    def is_available(self, slot: TimeSlot) -> bool:
        if not self.availability:
            return True
        return slot.start_hour in self.availability.get(slot.day_of_week, [])


@dataclass
class ScheduledClass:
    id: str
    course_id: str
    teacher_id: Optional[str]
    student_ids: List[str]
    time_slot: TimeSlot
    class_type: str = 'group'  # 'individual' or 'group'
    status: str = 'scheduled'
    confidence_score: float = 0.0
    rationale: str = ''
    priority: str = 'medium'
    duration_minutes: int = 60
    fixed: bool = False  # already committed; never moved


@dataclass
class ConflictResolution:
    type: str  # reschedule, reassign_teacher, split_class, change_location
    description: str
    feasibility_score: float


@dataclass
class SchedulingConflict:
    id: str
    type: str
    severity: str
    affected_entity_ids: List[str]
    description: str
    resolutions: List[ConflictResolution] = field(default_factory=list)
    auto_resolvable: bool = True
    entity_id: Optional[str] = None
    slot_key: Optional[Tuple[int, str]] = None


@dataclass(frozen=True)
class SchedulingRecommendation:
    id: str
    type: str
    description: str
    confidence_score: float
    benefits: Tuple[str, ...]
    drawbacks: Tuple[str, ...]
    complexity: str
    priority: str
    parameters: Dict[str, object] = field(default_factory=dict, hash=False, compare=False)


@dataclass
class ClassComposition:
    id: str
    student_ids: List[str]
    content_focus: List[str] = field(default_factory=list)
    class_type: str = 'group'
    recommended_duration: int = 60  # minutes
    difficulty_level: int = 5
    scheduling_priority: str = 'medium'
    teacher_requirements: List[str] = field(default_factory=list)


@dataclass
class SchedulingDecision:
    id: str
    course_id: str
    composition: ClassComposition
    teacher_id: Optional[str] = None
    time_slot: Optional[TimeSlot] = None
    confidence_score: float = 0.75
    rationale: str = ''


@dataclass
class PerformanceRecord:
    scheduled_time: datetime
    rating: float  # 1..5


@dataclass
class OptimizationConstraints:
    teachers: List[TeacherProfile] = field(default_factory=list)
    performance_history: Dict[str, List[PerformanceRecord]] = field(default_factory=dict)
    candidate_slots: List[TimeSlot] = field(default_factory=list)
    fixed_classes: List[ScheduledClass] = field(default_factory=list)
    balance_workload: bool = True
    optimize_timing: bool = True
    alternative_count: int = 3


@dataclass
class OptimizationMetrics:
    utilization: float
    satisfaction: float
    efficiency: float
    conflict: float
    balance: float


@dataclass
class OptimizationSolution:
    scheduled_classes: List[ScheduledClass]
    unresolved_conflicts: List[SchedulingConflict]
    metrics: OptimizationMetrics
    confidence_score: float
    alternative_solutions: List['OptimizationSolution'] = field(default_factory=list)
    strategy: str = 'base'
    workload_distribution: Dict[str, int] = field(default_factory=dict)


@dataclass
class ClassScheduleEntry:
    day_of_week: int
    start_time: str
    end_time: str


@dataclass
class CandidateClass:
    id: str
    course_id: str
    course_type: str
    teacher_id: str
    teacher_name: str = 'TBD'
    schedules: List[ClassScheduleEntry] = field(default_factory=list)
    next_session_start: Optional[datetime] = None
    duration_minutes: int = 60
    location: Optional[str] = None
    is_online: bool = False
    current_enrollment: int = 0
    capacity: int = 9

    @property
    def available_spots(self) -> int:
        return max(0, self.capacity - self.current_enrollment)


@dataclass
class StudentSchedulePreferences:
    student_id: str
    preferred_days: List[int] = field(default_factory=lambda: [1, 2, 3, 4, 5])
    preferred_times: Dict[int, List[str]] = field(
        default_factory=lambda: {d: ['09:00-12:00', '14:00-17:00'] for d in range(1, 6)}
    )
    preferred_class_size_min: int = 1
    preferred_class_size_max: int = 9
    preferred_teachers: List[str] = field(default_factory=list)
    avoided_teachers: List[str] = field(default_factory=list)
    willing_to_change_teacher: bool = True
    advance_notice_required_hours: int = 24


@dataclass
class SuggestionConstraints:
    earliest_date: Optional[datetime] = None
    latest_date: Optional[datetime] = None
    excluded_class_ids: List[str] = field(default_factory=list)
    excluded_teacher_ids: List[str] = field(default_factory=list)
    min_compatibility_score: Optional[float] = None
    include_other_course_types: bool = False


@dataclass
class MakeUpSuggestionRequest:
    student_id: str
    original_class_id: str
    postponement_id: str = ''
    student_preferences: Optional[StudentSchedulePreferences] = None
    constraints: Optional[SuggestionConstraints] = None
    max_suggestions: Optional[int] = None
    reference_time: Optional[datetime] = None


@dataclass(frozen=True)
class DetailedMakeUpSuggestion:
    id: str
    class_id: str
    teacher_id: str
    teacher_name: str
    course_type: str
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    location: Optional[str]
    is_online: bool
    current_enrollment: int
    capacity: int
    available_spots: int
    content_compatibility_score: float
    schedule_preference_score: float
    teacher_compatibility_score: float
    class_size_preference_score: float
    location_preference_score: float
    timing_preference_score: float
    availability_score: float
    overall_compatibility_score: float
    recommendation_strength: str
    benefits: Tuple[str, ...]
    considerations: Tuple[str, ...]


@dataclass
class ContentMatch:
    class_id: str
    similarity: float
    skill_overlap: float = 0.0
    objective_alignment: float = 0.0


@dataclass
class SchedulingMetrics:
    processing_time_ms: float = 0.0
    students_processed: int = 0
    classes_scheduled: int = 0
    conflicts_detected: int = 0
    conflicts_resolved: int = 0
    unresolved_conflicts: int = 0
    resource_utilization: float = 0.0
    iterations_performed: int = 0
    optimization_applied: bool = False


@dataclass
class SchedulingError:
    code: str
    message: str
    category: str  # validation, algorithm, conflict, cancelled, timeout, commit


@dataclass
class SchedulingResult:
    request_id: str
    success: bool
    status: str  # 'completed' or 'failed'
    scheduled_classes: List[ScheduledClass] = field(default_factory=list)
    conflicts: List[SchedulingConflict] = field(default_factory=list)
    unresolved_conflicts: List[SchedulingConflict] = field(default_factory=list)
    recommendations: List[SchedulingRecommendation] = field(default_factory=list)
    metrics: SchedulingMetrics = field(default_factory=SchedulingMetrics)
    optimization: Optional[OptimizationSolution] = None
    error: Optional[SchedulingError] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass
class CommitOutcome:
    accepted: bool
    rejected_due_to_conflict: bool = False
    reason: str = ''


@dataclass
class CommitReport:
    committed: List[ScheduledClass] = field(default_factory=list)
    unresolved_conflicts: List[SchedulingConflict] = field(default_factory=list)
    retried: List[str] = field(default_factory=list)


@dataclass
class HealthStatus:
    status: str  # healthy, degraded, unhealthy
    success_rate: float
    queue_depth: int
    total_requests: int = 0
    failed_requests: int = 0
    average_processing_ms: float = 0.0
    uptime_seconds: float = 0.0
