from datetime import datetime, timezone

import pytest

from academy_scheduler.data_store import InMemoryDataStore
from academy_scheduler.model import (
    CandidateClass, ClassScheduleEntry, CourseRecord, ScheduledClass, SlotCapacity,
    StudentRecord, TeacherProfile, TimeSlot,
)
from academy_scheduler.scheduler import SchedulingService
from academy_scheduler.timegrid import TimeGrid


@pytest.fixture
def reference_time():
    # Sunday noon; the next Monday is 2026-10-19
    return datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_slot():
    def _make(day, start, end=None, max_students=9, enrolled=0, location=None):
        if end is None:
            hour = int(start.split(':')[0]) + 1
            end = f"{hour:02d}:{start.split(':')[1]}"
        return TimeSlot(
            id=TimeGrid.slot_id(day, start),
            start_time=start,
            end_time=end,
            day_of_week=day,
            capacity=SlotCapacity(max_students=max_students, current_enrollment=enrolled),
            location=location,
        )
    return _make


@pytest.fixture
def make_class(make_slot):
    def _make(class_id, teacher_id, student_ids, day=1, start='10:00', end=None,
              priority='medium', confidence=0.8, fixed=False, location=None, max_students=9):
        return ScheduledClass(
            id=class_id,
            course_id='C1',
            teacher_id=teacher_id,
            student_ids=list(student_ids),
            time_slot=make_slot(day, start, end, max_students=max_students, location=location),
            priority=priority,
            confidence_score=confidence,
            fixed=fixed,
        )
    return _make


@pytest.fixture
def make_candidate():
    def _make(class_id, teacher_id, day=2, start='10:00', course_type='Basic', course_id='C1',
              enrolled=3, capacity=9, is_online=False, location='Room 1'):
        hour = int(start.split(':')[0]) + 1
        return CandidateClass(
            id=class_id,
            course_id=course_id,
            course_type=course_type,
            teacher_id=teacher_id,
            teacher_name=f"Teacher {teacher_id}",
            schedules=[ClassScheduleEntry(day_of_week=day, start_time=start, end_time=f"{hour:02d}:00")],
            location=None if is_online else location,
            is_online=is_online,
            current_enrollment=enrolled,
            capacity=capacity,
        )
    return _make


@pytest.fixture
def store():
    s = InMemoryDataStore()
    for i in range(1, 13):
        s.add_student(StudentRecord(id=f"S{i}", name=f"Student {i}"))

    s.add_teacher(TeacherProfile(id='T1', name='Ana', specializations=['conversation'], max_class_size=9))
    s.add_teacher(TeacherProfile(id='T2', name='Ben', specializations=['conversation', 'ielts']))
    s.add_teacher(TeacherProfile(id='T3', name='Carla'))

    s.add_course(CourseRecord(id='C1', title='Everyday English', course_type='Basic'), teacher_ids=['T1', 'T2'])
    s.add_course(CourseRecord(id='C2', title='Business English', course_type='Business English'), teacher_ids=['T3'])
    s.add_course(CourseRecord(id='C3', title='English Online', course_type='Basic', is_online=True), teacher_ids=['T2'])
    return s


@pytest.fixture
def service(store):
    return SchedulingService(store)
