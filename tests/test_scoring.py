import logging

import pytest

from academy_scheduler import scoring
from academy_scheduler.config import ScoringWeights, SuggestionThresholds, SuggestionWeights
from academy_scheduler.data_store import InMemoryDataStore
from academy_scheduler.errors import ConfigurationError, DataStoreError
from academy_scheduler.model import StudentProgress, StudentSchedulePreferences


class FailingSimilarityStore(InMemoryDataStore):
    def content_similarity(self, course_a, course_b):
        raise DataStoreError("similarity service down")


@pytest.fixture
def prefs():
    return StudentSchedulePreferences(student_id='S1', preferred_teachers=['T2'], avoided_teachers=['T3'])


def test_content_same_type(make_candidate):
    original = make_candidate('K0', 'T1')
    candidate = make_candidate('K1', 'T2', course_id='C9')
    assert scoring.content_compatibility(original, candidate) == 0.9


def test_content_uses_store_similarity(make_candidate):
    store = InMemoryDataStore()
    store.set_similarity('C1', 'C2', 0.72)
    original = make_candidate('K0', 'T1')
    candidate = make_candidate('K1', 'T2', course_type='Business English', course_id='C2')
    assert scoring.content_compatibility(original, candidate, store) == pytest.approx(0.72)


def test_content_missing_similarity_defaults(make_candidate, caplog):
    original = make_candidate('K0', 'T1')
    candidate = make_candidate('K1', 'T2', course_type='Business English', course_id='C2')
    with caplog.at_level(logging.WARNING):
        assert scoring.content_compatibility(original, candidate, InMemoryDataStore()) == 0.5
    assert "No content similarity" in caplog.text


def test_content_store_failure_defaults(make_candidate, caplog):
    original = make_candidate('K0', 'T1')
    candidate = make_candidate('K1', 'T2', course_type='Business English', course_id='C2')
    with caplog.at_level(logging.WARNING):
        assert scoring.content_compatibility(original, candidate, FailingSimilarityStore()) == 0.5
    assert "similarity service down" in caplog.text


def test_schedule_preference(make_candidate, prefs):
    assert scoring.schedule_preference(make_candidate('K1', 'T1', day=2), prefs) == 0.8
    assert scoring.schedule_preference(make_candidate('K1', 'T1', day=6), prefs) == 0.6


@pytest.mark.parametrize('teacher_id, willing, expected', [
    ('T1', True, 1.0),
    ('T2', True, 0.9),
    ('T3', True, 0.2),
    ('T9', True, 0.7),
    ('T9', False, 0.4),
])
def test_teacher_compatibility(teacher_id, willing, expected, prefs):
    prefs.willing_to_change_teacher = willing
    assert scoring.teacher_compatibility('T1', teacher_id, prefs) == expected


def test_class_size_inside_range(make_candidate, prefs):
    assert scoring.class_size_preference(make_candidate('K1', 'T1', enrolled=3), prefs) == 1.0


def test_class_size_outside_range(make_candidate):
    prefs = StudentSchedulePreferences(student_id='S1', preferred_class_size_min=1, preferred_class_size_max=4)
    score = scoring.class_size_preference(make_candidate('K1', 'T1', enrolled=8, capacity=9), prefs)
    assert score == pytest.approx(1 - 4 / 9)


def test_class_size_floor(make_candidate):
    prefs = StudentSchedulePreferences(student_id='S1', preferred_class_size_min=20, preferred_class_size_max=20)
    assert scoring.class_size_preference(make_candidate('K1', 'T1', enrolled=0, capacity=9), prefs) == 0.1


def test_location_and_timing(make_candidate, prefs):
    assert scoring.location_preference(make_candidate('K1', 'T1', is_online=True), prefs) == 0.8
    assert scoring.location_preference(make_candidate('K1', 'T1'), prefs) == 0.7
    assert scoring.timing_preference(make_candidate('K1', 'T1'), prefs) == 0.7


def test_availability():
    assert scoring.availability(3, 9) == pytest.approx(1 / 3)
    assert scoring.availability(0, 9) == 0.0
    assert scoring.availability(5, 0) == 0.0


def test_composite_excellent_tier():
    scores = {
        'content_compatibility': 0.95,
        'schedule_preference': 0.95,
        'teacher_compatibility': 1.0,
        'class_size_preference': 0.9,
        'location_preference': 0.7,
        'timing_preference': 0.7,
        'availability_score': 0.5,
    }
    overall = scoring.composite(scores, SuggestionWeights())
    assert overall >= 0.85
    assert scoring.recommendation_tier(overall, SuggestionThresholds()) == 'excellent'


@pytest.mark.parametrize('overall, tier', [(0.9, 'excellent'), (0.7, 'high'), (0.6, 'medium'), (0.41, 'low')])
def test_recommendation_tier(overall, tier):
    assert scoring.recommendation_tier(overall, SuggestionThresholds()) == tier


def test_composite_rejects_bad_weights():
    with pytest.raises(ConfigurationError):
        scoring.composite({}, SuggestionWeights(content_compatibility=0.9))


def test_peak_hour_score():
    assert scoring.peak_hour_score(10) == 1.0
    assert scoring.peak_hour_score(15) == 1.0
    assert scoring.peak_hour_score(9) == 0.7
    assert scoring.peak_hour_score(17) == 0.3


def test_student_preference_requested_slot(make_slot):
    slot = make_slot(1, '09:00')
    assert scoring.student_preference_score(slot, [], preferred_slots=[make_slot(1, '09:00')]) == 1.0


def test_student_preference_windows(make_slot):
    progress = [
        StudentProgress(student_id='S1', preferred_times={1: ['09:00-12:00']}),
        StudentProgress(student_id='S2', preferred_times={1: ['14:00-17:00']}),
    ]
    assert scoring.student_preference_score(make_slot(1, '10:00'), progress) == pytest.approx(0.75)
    # no window for the day
    assert scoring.student_preference_score(make_slot(2, '10:00'), progress) == pytest.approx(0.3)


def test_continuity_score(make_slot):
    assert scoring.continuity_score(make_slot(1, '10:00')) == 1.0
    assert scoring.continuity_score(make_slot(6, '17:00')) == pytest.approx(0.4)


def test_slot_confidence_range(make_slot):
    weights = ScoringWeights()
    best = scoring.slot_score(make_slot(1, '10:00'), [], weights)
    assert scoring.slot_confidence(best, weights) == pytest.approx(1.0)
    worst = scoring.slot_score(make_slot(6, '19:00', enrolled=9), [], weights)
    assert 0.5 <= scoring.slot_confidence(worst, weights) < 1.0


def test_all_scores_in_unit_range(make_candidate, prefs):
    for candidate in (make_candidate('K1', 'T3', enrolled=8), make_candidate('K2', 'T2', is_online=True, enrolled=0)):
        values = [
            scoring.schedule_preference(candidate, prefs),
            scoring.teacher_compatibility('T1', candidate.teacher_id, prefs),
            scoring.class_size_preference(candidate, prefs),
            scoring.location_preference(candidate, prefs),
            scoring.timing_preference(candidate, prefs),
            scoring.availability(candidate.available_spots, candidate.capacity),
        ]
        assert all(0.0 <= v <= 1.0 for v in values)
