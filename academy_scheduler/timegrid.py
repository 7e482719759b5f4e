from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Callable, List, Optional

from .model import SlotCapacity, TimeSlot, RequestConstraints, ClassScheduleEntry

DAY_NAMES = {1: 'Monday', 2: 'Tuesday', 3: 'Wednesday', 4: 'Thursday', 5: 'Friday', 6: 'Saturday', 7: 'Sunday'}


def time_to_minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(':')
    return int(hours) * 60 + int(minutes)


def minutes_to_time(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def slots_overlap(a: TimeSlot, b: TimeSlot) -> bool:
    if a.day_of_week != b.day_of_week:
        return False
    start_a, end_a = time_to_minutes(a.start_time), time_to_minutes(a.end_time)
    start_b, end_b = time_to_minutes(b.start_time), time_to_minutes(b.end_time)
    return start_a < end_b and start_b < end_a


def in_time_window(start_time: str, window: str) -> bool:
    """`window` is "HH:MM-HH:MM"; the start must fall inside it (end exclusive)."""
    lo, hi = window.split('-')
    return time_to_minutes(lo) <= time_to_minutes(start_time) < time_to_minutes(hi)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps without a timezone are read as UTC; aware ones are converted to it."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_occurrence(entry: ClassScheduleEntry, not_before: datetime) -> datetime:
    """First datetime at or after `not_before` matching the weekday and start time of `entry`."""
    start_minutes = time_to_minutes(entry.start_time)
    start_of_day = datetime.combine(not_before.date(), time(0, 0), tzinfo=not_before.tzinfo)
    days_ahead = (entry.day_of_week - not_before.isoweekday()) % 7
    candidate = start_of_day + timedelta(days=days_ahead, minutes=start_minutes)
    if candidate < not_before:
        candidate += timedelta(days=7)
    return candidate


@dataclass(frozen=True)
class TimeGrid:
    """Enumerates the weekly candidate time slots (day x start hour)."""
    working_hours_start: int = 9
    working_hours_end: int = 18
    slot_minutes: int = 60
    available_days: tuple = (1, 2, 3, 4, 5)
    max_students: int = 9
    min_students: int = 2
    location: Optional[str] = None

    @classmethod
    def from_config(cls, constraints) -> 'TimeGrid':
        return cls(
            working_hours_start=constraints.working_hours_start,
            working_hours_end=constraints.working_hours_end,
            slot_minutes=constraints.slot_minutes,
            available_days=tuple(constraints.available_days),
            max_students=constraints.max_students_per_class,
            min_students=constraints.min_students_for_group_class,
            location=constraints.default_location or None,
        )

    @staticmethod
    def slot_id(day: int, start_time: str) -> str:
        return f"slot-{day}-{start_time.replace(':', '')}"

    def enumerate_slots(
        self,
        constraints: Optional[RequestConstraints] = None,
        enrollment_lookup: Optional[Callable[[str], int]] = None,
    ) -> List[TimeSlot]:
        days = list(self.available_days)
        first = self.working_hours_start * 60
        last = self.working_hours_end * 60

        if constraints is not None:
            if constraints.available_days:
                days = [d for d in days if d in constraints.available_days]
            if constraints.earliest_hour is not None:
                first = max(first, constraints.earliest_hour * 60)
            if constraints.latest_hour is not None:
                last = min(last, constraints.latest_hour * 60)

        slots = []
        for day in sorted(days):
            start = first
            while start + self.slot_minutes <= last:
                start_time = minutes_to_time(start)
                slot_id = self.slot_id(day, start_time)
                enrolled = enrollment_lookup(slot_id) if enrollment_lookup else 0
                slots.append(TimeSlot(
                    id=slot_id,
                    start_time=start_time,
                    end_time=minutes_to_time(start + self.slot_minutes),
                    day_of_week=day,
                    capacity=SlotCapacity(
                        max_students=self.max_students,
                        min_students=self.min_students,
                        current_enrollment=enrolled,
                    ),
                    location=self.location,
                ))
                start += self.slot_minutes
        return slots
