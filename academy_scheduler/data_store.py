import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import gspread
from google.oauth2.service_account import Credentials

from .config import unflatten
from .errors import DataStoreError
from .model import (
    CandidateClass, ClassScheduleEntry, CommitOutcome, ContentMatch, CourseRecord,
    PerformanceRecord, ScheduledClass, SlotCapacity, StudentProgress, StudentRecord,
    StudentSchedulePreferences, TeacherProfile, TimeSlot,
)
from .timegrid import TimeGrid, slots_overlap

logger = logging.getLogger(__name__)

SCOPES = [
    'https://www.googleapis.com/auth/spreadsheets',
    'https://www.googleapis.com/auth/drive'
]


class DataStore(ABC):
    """
    Read-only view of students, teachers, classes and history, plus the single
    write boundary `commit_schedule`. Lookups by id return None on a miss.
    """

    @abstractmethod
    def get_student(self, student_id: str) -> Optional[StudentRecord]: ...

    @abstractmethod
    def get_course(self, course_id: str) -> Optional[CourseRecord]: ...

    @abstractmethod
    def get_teacher(self, teacher_id: str) -> Optional[TeacherProfile]: ...

    @abstractmethod
    def get_class(self, class_id: str) -> Optional[CandidateClass]: ...

    @abstractmethod
    def get_student_progress(self, student_id: str, course_id: str) -> Optional[StudentProgress]: ...

    @abstractmethod
    def get_student_preferences(self, student_id: str) -> Optional[StudentSchedulePreferences]: ...

    @abstractmethod
    def list_course_teachers(self, course_id: str) -> List[TeacherProfile]: ...

    @abstractmethod
    def list_scheduled_classes(self, teacher_ids: Iterable[str], student_ids: Iterable[str]) -> List[ScheduledClass]: ...

    @abstractmethod
    def list_candidate_classes(self, course_type: Optional[str] = None) -> List[CandidateClass]: ...

    @abstractmethod
    def get_slot_enrollment(self, slot_id: str) -> int: ...

    @abstractmethod
    def get_performance_history(self, student_id: str) -> List[PerformanceRecord]: ...

    @abstractmethod
    def content_similarity(self, course_a: str, course_b: str) -> Optional[float]: ...

    @abstractmethod
    def find_similar_content_classes(self, student_id: str, course_id: str, unlearned_content: List[str]) -> List[ContentMatch]: ...

    @abstractmethod
    def commit_schedule(self, scheduled_class: ScheduledClass) -> CommitOutcome: ...


class InMemoryDataStore(DataStore):
    def __init__(self):
        self.students: Dict[str, StudentRecord] = {}
        self.courses: Dict[str, CourseRecord] = {}
        self.teachers: Dict[str, TeacherProfile] = {}
        self.course_teachers: Dict[str, List[str]] = {}
        self.classes: Dict[str, CandidateClass] = {}
        self.progress: Dict[Tuple[str, str], StudentProgress] = {}
        self.preferences: Dict[str, StudentSchedulePreferences] = {}
        self.scheduled: List[ScheduledClass] = []
        self.slot_enrollment: Dict[str, int] = {}
        self.ratings: Dict[str, List[PerformanceRecord]] = {}
        self.similarity: Dict[Tuple[str, str], float] = {}
        self._commit_lock = threading.Lock()

    # --- population helpers ---

    def add_student(self, student: StudentRecord):
        self.students[student.id] = student

    def add_course(self, course: CourseRecord, teacher_ids: Iterable[str] = ()):
        self.courses[course.id] = course
        self.course_teachers[course.id] = list(teacher_ids)

    def add_teacher(self, teacher: TeacherProfile):
        self.teachers[teacher.id] = teacher

    def add_class(self, candidate: CandidateClass):
        self.classes[candidate.id] = candidate

    def add_progress(self, progress: StudentProgress):
        self.progress[(progress.student_id, progress.course_id)] = progress

    def set_similarity(self, course_a: str, course_b: str, value: float):
        self.similarity[(course_a, course_b)] = value
        self.similarity[(course_b, course_a)] = value

    # --- DataStore ---

    def get_student(self, student_id):
        return self.students.get(student_id)

    def get_course(self, course_id):
        return self.courses.get(course_id)

    def get_teacher(self, teacher_id):
        return self.teachers.get(teacher_id)

    def get_class(self, class_id):
        return self.classes.get(class_id)

    def get_student_progress(self, student_id, course_id):
        return self.progress.get((student_id, course_id)) or self.progress.get((student_id, ''))

    def get_student_preferences(self, student_id):
        return self.preferences.get(student_id)

    def list_course_teachers(self, course_id):
        return [self.teachers[t] for t in self.course_teachers.get(course_id, []) if t in self.teachers]

    def list_scheduled_classes(self, teacher_ids, student_ids):
        teacher_ids, student_ids = set(teacher_ids), set(student_ids)
        return [
            c for c in self.scheduled
            if c.status == 'scheduled'
            and (c.teacher_id in teacher_ids or student_ids.intersection(c.student_ids))
        ]

    def list_candidate_classes(self, course_type=None):
        return [c for c in self.classes.values() if course_type is None or c.course_type == course_type]

    def get_slot_enrollment(self, slot_id):
        return self.slot_enrollment.get(slot_id, 0)

    def get_performance_history(self, student_id):
        return list(self.ratings.get(student_id, []))

    def content_similarity(self, course_a, course_b):
        if course_a == course_b:
            return 1.0
        return self.similarity.get((course_a, course_b))

    def find_similar_content_classes(self, student_id, course_id, unlearned_content):
        matches = []
        for candidate in self.classes.values():
            if candidate.course_id == course_id or candidate.available_spots == 0:
                continue
            similarity = self.content_similarity(course_id, candidate.course_id)
            if similarity is not None and similarity >= 0.5:
                matches.append(ContentMatch(class_id=candidate.id, similarity=similarity))
        matches.sort(key=lambda m: (-m.similarity, m.class_id))
        return matches

    def commit_schedule(self, scheduled_class):
        with self._commit_lock:
            clash = self._find_clash(scheduled_class, self.scheduled)
            if clash:
                return CommitOutcome(accepted=False, rejected_due_to_conflict=True, reason=clash)
            self.scheduled.append(replace(scheduled_class, fixed=True))
            slot_id = scheduled_class.time_slot.id
            self.slot_enrollment[slot_id] = self.slot_enrollment.get(slot_id, 0) + len(scheduled_class.student_ids)
            return CommitOutcome(accepted=True)

    @staticmethod
    def _find_clash(new: ScheduledClass, existing: List[ScheduledClass]) -> str:
        # Optimistic check on slot ownership: same teacher or student in an overlapping slot.
        for other in existing:
            if other.status != 'scheduled' or not slots_overlap(new.time_slot, other.time_slot):
                continue
            if new.teacher_id and other.teacher_id == new.teacher_id:
                return f"Teacher {new.teacher_id} already booked by class {other.id}"
            shared = set(new.student_ids).intersection(other.student_ids)
            if shared:
                return f"Students {', '.join(sorted(shared))} already booked by class {other.id}"
        return ''


# --- Google Sheets backend ---

def _get_gspread_client(credentials_path: str = 'credentials.json') -> gspread.Client:
    """
    Authenticates against Google Sheets:
    1. GCP_CREDENTIALS_JSON environment variable (Cloud Run).
    2. Otherwise the service account file at credentials_path (local).
    """
    creds_json_str = os.environ.get('GCP_CREDENTIALS_JSON')

    if creds_json_str:
        try:
            creds_dict = json.loads(creds_json_str)
            creds = Credentials.from_service_account_info(creds_dict, scopes=SCOPES)
        except json.JSONDecodeError as e:
            raise DataStoreError("Could not decode GCP_CREDENTIALS_JSON") from e
    else:
        if not os.path.exists(credentials_path):
            raise DataStoreError(f"Credentials file not found: {credentials_path} and GCP_CREDENTIALS_JSON is not set.")
        creds = Credentials.from_service_account_file(credentials_path, scopes=SCOPES)

    return gspread.authorize(creds)


def _split_list(value: Any) -> List[str]:
    # "T1, T2" -> ["T1", "T2"]
    return [v.strip() for v in str(value or '').split(',') if v.strip()]


def _to_bool(value: Any, default: bool = False) -> bool:
    if value in ('', None):
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'si', 'y')


def _to_float(value: Any, default: float = 0.0) -> float:
    if value in ('', None):
        return default
    # Spreadsheet locales may use a comma decimal separator (0,3 -> 0.3)
    return float(str(value).replace(',', '.'))


def _to_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    if value in ('', None):
        return default
    return int(float(str(value).replace(',', '.')))


def _parse_schedule_entries(value: Any) -> List[ClassScheduleEntry]:
    # "1 10:00-11:00; 3 14:00-15:00"
    entries = []
    for chunk in str(value or '').split(';'):
        chunk = chunk.strip()
        if not chunk:
            continue
        day, window = chunk.split()
        start, end = window.split('-')
        entries.append(ClassScheduleEntry(day_of_week=int(day), start_time=start, end_time=end))
    return entries


class SheetsDataStore(InMemoryDataStore):
    """
    Snapshot of the academy spreadsheet. `load()` reads every worksheet once;
    lookups are then served from memory. Commits re-read the ScheduledClasses
    sheet before appending so a slot taken by another writer is rejected.
    """

    def __init__(self, spreadsheet_name: str, credentials_path: str = 'credentials.json'):
        super().__init__()
        self.spreadsheet_name = spreadsheet_name
        self.credentials_path = credentials_path
        self._sheet = None

    def _open(self):
        if self._sheet is None:
            client = _get_gspread_client(self.credentials_path)
            try:
                self._sheet = client.open(self.spreadsheet_name)
            except gspread.SpreadsheetNotFound as e:
                raise DataStoreError(f"Spreadsheet not found: {self.spreadsheet_name}") from e
        return self._sheet

    def _records(self, worksheet: str, required: bool = True) -> List[Dict[str, Any]]:
        try:
            return self._open().worksheet(worksheet).get_all_records()
        except gspread.WorksheetNotFound as e:
            if required:
                raise DataStoreError(f"Worksheet not found: {worksheet}") from e
            logger.warning("Optional worksheet '%s' missing, using empty data", worksheet)
            return []
        except gspread.exceptions.APIError as e:
            raise DataStoreError(f"Error reading worksheet {worksheet}: {e}") from e

    def load(self) -> 'SheetsDataStore':
        for r in self._records('Students'):
            self.add_student(StudentRecord(id=str(r['id']), name=str(r.get('name', ''))))

        for r in self._records('Teachers'):
            availability_str = str(r.get('availability', '') or '{}')
            try:
                availability = {int(d): [int(h) for h in hours] for d, hours in json.loads(availability_str).items()}
            except (json.JSONDecodeError, ValueError, AttributeError):
                logger.warning("Invalid availability for teacher %s, treating as always available", r.get('id'))
                availability = {}
            self.add_teacher(TeacherProfile(
                id=str(r['id']),
                name=str(r.get('name', '')),
                specializations=_split_list(r.get('specializations')),
                max_class_size=_to_int(r.get('max_class_size')),
                availability=availability,
                max_weekly_minutes=_to_int(r.get('max_weekly_minutes')),
            ))

        for r in self._records('Courses'):
            self.add_course(CourseRecord(
                id=str(r['id']),
                title=str(r.get('title', '')),
                course_type=str(r.get('course_type', '') or 'Basic'),
                duration_minutes=_to_int(r.get('duration_minutes'), 60),
                is_online=_to_bool(r.get('is_online')),
            ), teacher_ids=_split_list(r.get('teacher_ids')))

        for r in self._records('Classes'):
            course = self.courses.get(str(r['course_id']))
            teacher = self.teachers.get(str(r['teacher_id']))
            self.add_class(CandidateClass(
                id=str(r['id']),
                course_id=str(r['course_id']),
                course_type=course.course_type if course else 'Basic',
                teacher_id=str(r['teacher_id']),
                teacher_name=teacher.name if teacher else 'TBD',
                schedules=_parse_schedule_entries(r.get('schedules')),
                duration_minutes=course.duration_minutes if course else 60,
                location=str(r.get('location') or '') or None,
                is_online=course.is_online if course else False,
                current_enrollment=_to_int(r.get('current_enrollment'), 0),
                capacity=_to_int(r.get('capacity'), 9),
            ))

        for r in self._records('Progress', required=False):
            self.add_progress(StudentProgress(
                student_id=str(r['student_id']),
                course_id=str(r.get('course_id', '')),
                progress_percentage=_to_float(r.get('progress_percentage')),
                completed_content=_split_list(r.get('completed_content')),
                unlearned_content=_split_list(r.get('unlearned_content')),
                learning_pace=_to_float(r.get('learning_pace'), 2.0),
            ))

        for r in self._records('Preferences', required=False):
            student_id = str(r['student_id'])
            defaults = StudentSchedulePreferences(student_id=student_id)
            self.preferences[student_id] = StudentSchedulePreferences(
                student_id=student_id,
                preferred_days=[int(d) for d in _split_list(r.get('preferred_days'))] or defaults.preferred_days,
                preferred_class_size_min=_to_int(r.get('class_size_min'), defaults.preferred_class_size_min),
                preferred_class_size_max=_to_int(r.get('class_size_max'), defaults.preferred_class_size_max),
                preferred_teachers=_split_list(r.get('preferred_teachers')),
                avoided_teachers=_split_list(r.get('avoided_teachers')),
                willing_to_change_teacher=_to_bool(r.get('willing_to_change_teacher'), True),
                advance_notice_required_hours=_to_int(r.get('advance_notice_hours'), 24),
            )

        for r in self._records('Ratings', required=False):
            self.ratings.setdefault(str(r['student_id']), []).append(PerformanceRecord(
                scheduled_time=datetime.fromisoformat(str(r['scheduled_time'])),
                rating=_to_float(r['rating']),
            ))

        for r in self._records('Similarity', required=False):
            self.set_similarity(str(r['course_a']), str(r['course_b']), _to_float(r['similarity']))

        self.scheduled = self._read_scheduled()
        for c in self.scheduled:
            self.slot_enrollment[c.time_slot.id] = self.slot_enrollment.get(c.time_slot.id, 0) + len(c.student_ids)

        logger.info(
            "Loaded spreadsheet '%s': %d students, %d teachers, %d courses, %d classes, %d scheduled",
            self.spreadsheet_name, len(self.students), len(self.teachers), len(self.courses),
            len(self.classes), len(self.scheduled),
        )
        return self

    def _read_scheduled(self) -> List[ScheduledClass]:
        scheduled = []
        for r in self._records('ScheduledClasses', required=False):
            day = int(r['day_of_week'])
            start = str(r['start_time'])
            scheduled.append(ScheduledClass(
                id=str(r['id']),
                course_id=str(r['course_id']),
                teacher_id=str(r.get('teacher_id') or '') or None,
                student_ids=_split_list(r.get('student_ids')),
                time_slot=TimeSlot(
                    id=TimeGrid.slot_id(day, start),
                    start_time=start,
                    end_time=str(r['end_time']),
                    day_of_week=day,
                    capacity=SlotCapacity(max_students=_to_int(r.get('capacity'), 9)),
                    location=str(r.get('location') or '') or None,
                ),
                status=str(r.get('status') or 'scheduled'),
                fixed=True,
            ))
        return scheduled

    def commit_schedule(self, scheduled_class):
        with self._commit_lock:
            # Fresh read: another instance may have claimed the slot since load()
            current = self._read_scheduled()
            clash = self._find_clash(scheduled_class, current)
            if clash:
                logger.warning("Commit rejected for class %s: %s", scheduled_class.id, clash)
                return CommitOutcome(accepted=False, rejected_due_to_conflict=True, reason=clash)

            slot = scheduled_class.time_slot
            row = [
                scheduled_class.id,
                scheduled_class.course_id,
                scheduled_class.teacher_id or '',
                ', '.join(scheduled_class.student_ids),
                slot.day_of_week,
                slot.start_time,
                slot.end_time,
                slot.location or '',
                slot.capacity.max_students,
                scheduled_class.status,
            ]
            try:
                self._open().worksheet('ScheduledClasses').append_row(row)
            except gspread.WorksheetNotFound:
                ws = self._open().add_worksheet(title='ScheduledClasses', rows=1000, cols=10)
                ws.append_row(['id', 'course_id', 'teacher_id', 'student_ids', 'day_of_week',
                               'start_time', 'end_time', 'location', 'capacity', 'status'])
                ws.append_row(row)
            except gspread.exceptions.APIError as e:
                raise DataStoreError(f"Error writing class {scheduled_class.id}: {e}") from e

            self.scheduled = current + [replace(scheduled_class, fixed=True)]
            self.slot_enrollment[slot.id] = self.slot_enrollment.get(slot.id, 0) + len(scheduled_class.student_ids)
            return CommitOutcome(accepted=True)


def load_config_overrides(spreadsheet_name: str, credentials_path: str = 'credentials.json') -> Dict[str, Any]:
    """
    Reads the 'Configuration' worksheet (parameter | value rows) into a nested
    partial config suitable for SchedulingConfig.merged().
    Parameter names are dotted paths, e.g. 'scoring_weights.resource_utilization'.
    """
    client = _get_gspread_client(credentials_path)
    try:
        sh = client.open(spreadsheet_name)
        records = sh.worksheet('Configuration').get_all_records()
    except gspread.SpreadsheetNotFound as e:
        raise DataStoreError(f"Spreadsheet not found: {spreadsheet_name}") from e
    except gspread.WorksheetNotFound:
        return {}

    raw = {str(r['parameter']).strip(): r['value'] for r in records if str(r.get('parameter', '')).strip()}
    params: Dict[str, Any] = {}

    for key, value in raw.items():
        leaf = key.rsplit('.', 1)[-1]
        if leaf == 'available_days':
            # "1, 2, 3" -> (1, 2, 3)
            params[key] = tuple(int(x) for x in _split_list(value))
        elif leaf.startswith(('enable_', 'balance_', 'optimize_')):
            params[key] = _to_bool(value)
        elif leaf in ('version', 'default_location'):
            params[key] = str(value)
        elif isinstance(value, int) and not isinstance(value, bool):
            params[key] = value
        else:
            number = _to_float(value)
            params[key] = int(number) if number.is_integer() and ('.' not in str(value) and ',' not in str(value)) else number

    return unflatten(params)
