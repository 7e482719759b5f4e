from academy_scheduler.conflicts import ConflictDetector, ConflictResolver, find_alternative_slot, involving


def test_teacher_double_booking_detected(make_class):
    classes = [
        make_class('A', 'T1', ['S1'], priority='high'),
        make_class('B', 'T1', ['S2'], priority='low'),
    ]
    conflicts = ConflictDetector().detect(classes)

    assert len(conflicts) == 1
    conflict = conflicts[0]
    assert conflict.type == 'teacher_double_booking'
    assert conflict.severity == 'critical'
    assert conflict.auto_resolvable
    assert conflict.affected_entity_ids == ['A', 'B']
    assert conflict.id == 'teacher_double_booking:T1:1-1000'
    assert {r.type for r in conflict.resolutions} == {'reschedule', 'reassign_teacher'}


def test_resolver_moves_lower_priority_class(make_class, make_slot):
    a = make_class('A', 'T1', ['S1'], priority='high')
    b = make_class('B', 'T1', ['S2'], priority='low')
    classes = [a, b]
    conflicts = ConflictDetector().detect(classes)

    outcome = ConflictResolver().resolve(classes, conflicts, [make_slot(1, '10:00'), make_slot(1, '11:00')])

    assert outcome.moved == ['B']
    assert outcome.unresolved == []
    assert [c.id for c in outcome.resolved] == [conflicts[0].id]
    assert a.time_slot.start_time == '10:00'
    assert b.time_slot.start_time == '11:00'
    assert ConflictDetector().detect(classes) == []


def test_resolver_without_free_slot_keeps_conflict(make_class, make_slot):
    classes = [make_class('A', 'T1', ['S1']), make_class('B', 'T1', ['S2'])]
    conflicts = ConflictDetector().detect(classes)

    outcome = ConflictResolver().resolve(classes, conflicts, [make_slot(1, '10:00')])

    assert outcome.moved == []
    assert [c.type for c in outcome.unresolved] == ['teacher_double_booking']


def test_resolver_tie_breaks_on_confidence_then_id(make_class, make_slot):
    classes = [
        make_class('A', 'T1', ['S1'], confidence=0.6),
        make_class('B', 'T1', ['S2'], confidence=0.9),
    ]
    conflicts = ConflictDetector().detect(classes)
    outcome = ConflictResolver().resolve(classes, conflicts, [make_slot(2, '09:00')])
    assert outcome.moved == ['A']


def test_fixed_classes_are_never_moved(make_class, make_slot):
    committed = make_class('A', 'T1', ['S1'], priority='low', fixed=True)
    tentative = make_class('B', 'T1', ['S2'], priority='urgent')
    classes = [committed, tentative]
    outcome = ConflictResolver().resolve(classes, ConflictDetector().detect(classes), [make_slot(3, '09:00')])

    assert outcome.moved == ['B']
    assert committed.time_slot.day_of_week == 1
    assert tentative.time_slot.day_of_week == 3


def test_only_fixed_classes_stay_unresolved(make_class, make_slot):
    classes = [make_class('A', 'T1', ['S1'], fixed=True), make_class('B', 'T1', ['S2'], fixed=True)]
    outcome = ConflictResolver().resolve(classes, ConflictDetector().detect(classes), [make_slot(3, '09:00')])
    assert len(outcome.unresolved) == 1


def test_involving_keeps_conflicts_touching_given_classes(make_class):
    classes = [
        make_class('old-1', 'T1', ['S8'], fixed=True),
        make_class('old-2', 'T1', ['S9'], fixed=True),
        make_class('new', 'T2', ['S8']),
    ]
    conflicts = ConflictDetector().detect(classes)

    assert [c.type for c in conflicts] == ['teacher_double_booking', 'student_double_booking']
    assert [c.type for c in involving(conflicts, ['new'])] == ['student_double_booking']
    assert involving(conflicts, []) == []


def test_triple_booking_needs_two_moves(make_class, make_slot):
    classes = [make_class(i, 'T1', [f"S{n}"]) for n, i in enumerate('ABC')]
    slots = [make_slot(1, '10:00'), make_slot(1, '11:00'), make_slot(1, '12:00')]
    outcome = ConflictResolver().resolve(classes, ConflictDetector().detect(classes), slots)

    assert sorted(outcome.moved) == ['A', 'B']
    assert len({c.time_slot.key for c in classes}) == 3


def test_student_double_booking(make_class):
    conflicts = ConflictDetector().detect([make_class('A', 'T1', ['S1']), make_class('B', 'T2', ['S1', 'S2'])])
    assert [c.type for c in conflicts] == ['student_double_booking']
    assert conflicts[0].entity_id == 'S1'
    assert conflicts[0].severity == 'critical'


def test_time_overlap(make_class):
    conflicts = ConflictDetector().detect([
        make_class('A', 'T1', ['S1'], start='10:00', end='11:00'),
        make_class('B', 'T1', ['S2'], start='10:30', end='11:30'),
    ])
    assert [c.type for c in conflicts] == ['time_overlap']
    assert conflicts[0].severity == 'high'


def test_adjacent_classes_do_not_overlap(make_class):
    assert ConflictDetector().detect([
        make_class('A', 'T1', ['S1'], start='10:00'),
        make_class('B', 'T1', ['S1'], start='11:00'),
    ]) == []


def test_room_conflict(make_class):
    conflicts = ConflictDetector().detect([
        make_class('A', 'T1', ['S1'], location='Room 1'),
        make_class('B', 'T2', ['S2'], location='Room 1'),
    ])
    assert [c.type for c in conflicts] == ['room_conflict']
    assert conflicts[0].severity == 'medium'


def test_online_classes_share_no_room(make_class):
    assert ConflictDetector().detect([
        make_class('A', 'T1', ['S1'], location='online'),
        make_class('B', 'T2', ['S2'], location='online'),
    ]) == []


def test_capacity_exceeded_is_not_auto_resolvable(make_class, make_slot):
    classes = [make_class('A', 'T1', ['S1', 'S2', 'S3'], max_students=2)]
    conflicts = ConflictDetector().detect(classes)

    assert [c.type for c in conflicts] == ['capacity_exceeded']
    assert not conflicts[0].auto_resolvable
    assert conflicts[0].resolutions[0].type == 'split_class'

    outcome = ConflictResolver().resolve(classes, conflicts, [make_slot(2, '10:00')])
    assert outcome.unresolved == conflicts


def test_cancelled_classes_are_ignored(make_class):
    b = make_class('B', 'T1', ['S2'])
    b.status = 'cancelled'
    assert ConflictDetector().detect([make_class('A', 'T1', ['S1']), b]) == []


def test_detection_is_deterministic(make_class):
    first = ConflictDetector().detect([make_class('B', 'T1', ['S1']), make_class('A', 'T1', ['S1'])])
    second = ConflictDetector().detect([make_class('A', 'T1', ['S1']), make_class('B', 'T1', ['S1'])])
    assert [c.id for c in first] == [c.id for c in second]


def test_find_alternative_slot_respects_capacity_and_blocked(make_class, make_slot):
    target = make_class('A', 'T1', ['S1', 'S2'])
    slots = [make_slot(1, '09:00', max_students=1), make_slot(1, '11:00'), make_slot(1, '12:00')]

    assert find_alternative_slot(target, [], slots).start_time == '11:00'
    assert find_alternative_slot(target, [], slots, blocked={(1, '11:00')}).start_time == '12:00'


def test_find_alternative_slot_keeps_room(make_class, make_slot):
    target = make_class('A', 'T1', ['S1'], location='Room 2')
    assert find_alternative_slot(target, [], [make_slot(2, '09:00')]).location == 'Room 2'
