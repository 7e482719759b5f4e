import gspread
import pytest

from academy_scheduler import data_store
from academy_scheduler.data_store import (
    InMemoryDataStore, SheetsDataStore, _parse_schedule_entries, _split_list, _to_bool, _to_float,
    _to_int, load_config_overrides,
)
from academy_scheduler.errors import DataStoreError


class FakeWorksheet:
    def __init__(self, records):
        self.records = records
        self.appended = []

    def get_all_records(self):
        return list(self.records)

    def append_row(self, row):
        self.appended.append(row)


class FakeSpreadsheet:
    def __init__(self, sheets):
        self.sheets = sheets

    def worksheet(self, name):
        if name not in self.sheets:
            raise gspread.WorksheetNotFound(name)
        return self.sheets[name]

    def add_worksheet(self, title, rows, cols):
        self.sheets[title] = FakeWorksheet([])
        return self.sheets[title]


class FakeClient:
    def __init__(self, spreadsheet):
        self.spreadsheet = spreadsheet

    def open(self, name):
        if self.spreadsheet is None:
            raise gspread.SpreadsheetNotFound(name)
        return self.spreadsheet


@pytest.fixture
def sheets():
    return {
        'Students': FakeWorksheet([{'id': 'S1', 'name': 'Lucia'}, {'id': 'S2', 'name': 'Marco'}]),
        'Teachers': FakeWorksheet([
            {'id': 'T1', 'name': 'Ana', 'specializations': 'conversation, ielts', 'max_class_size': 6,
             'availability': '{"1": [9, 10], "3": [14]}', 'max_weekly_minutes': ''},
            {'id': 'T2', 'name': 'Ben', 'specializations': '', 'max_class_size': '',
             'availability': 'not json', 'max_weekly_minutes': 600},
        ]),
        'Courses': FakeWorksheet([
            {'id': 'C1', 'title': 'Everyday English', 'course_type': 'Basic', 'duration_minutes': 60,
             'is_online': 'no', 'teacher_ids': 'T1, T2'},
        ]),
        'Classes': FakeWorksheet([
            {'id': 'K1', 'course_id': 'C1', 'teacher_id': 'T1', 'schedules': '1 10:00-11:00; 3 14:00-15:00',
             'location': 'Room 2', 'current_enrollment': 4, 'capacity': 9},
        ]),
        'Similarity': FakeWorksheet([{'course_a': 'C1', 'course_b': 'C2', 'similarity': '0,65'}]),
        'ScheduledClasses': FakeWorksheet([
            {'id': 'class-old', 'course_id': 'C1', 'teacher_id': 'T1', 'student_ids': 'S2',
             'day_of_week': 1, 'start_time': '10:00', 'end_time': '11:00', 'location': '',
             'capacity': 9, 'status': 'scheduled'},
        ]),
    }


@pytest.fixture
def sheet_store(sheets, monkeypatch):
    monkeypatch.setattr(data_store, '_get_gspread_client', lambda path: FakeClient(FakeSpreadsheet(sheets)))
    return SheetsDataStore('ACADEMY').load()


# --- parsing helpers ---

def test_split_list():
    assert _split_list('T1, T2,, T3 ') == ['T1', 'T2', 'T3']
    assert _split_list('') == []
    assert _split_list(None) == []


@pytest.mark.parametrize('value, expected', [('yes', True), ('TRUE', True), ('si', True), ('0', False), (True, True)])
def test_to_bool(value, expected):
    assert _to_bool(value) is expected


def test_numbers_accept_comma_decimals():
    assert _to_float('0,3') == pytest.approx(0.3)
    assert _to_float('', 1.5) == 1.5
    assert _to_int('12') == 12
    assert _to_int('', 9) == 9


def test_parse_schedule_entries():
    entries = _parse_schedule_entries('1 10:00-11:00; 3 14:00-15:00')
    assert [(e.day_of_week, e.start_time, e.end_time) for e in entries] == [(1, '10:00', '11:00'), (3, '14:00', '15:00')]
    assert _parse_schedule_entries('') == []


# --- in-memory store ---

def test_in_memory_commit_rejects_clash(make_class):
    store = InMemoryDataStore()
    assert store.commit_schedule(make_class('A', 'T1', ['S1'])).accepted

    outcome = store.commit_schedule(make_class('B', 'T1', ['S2']))

    assert not outcome.accepted
    assert outcome.rejected_due_to_conflict
    assert 'Teacher T1' in outcome.reason
    assert store.get_slot_enrollment('slot-1-1000') == 1


def test_in_memory_commit_rejects_shared_student(make_class):
    store = InMemoryDataStore()
    store.commit_schedule(make_class('A', 'T1', ['S1']))
    outcome = store.commit_schedule(make_class('B', 'T2', ['S1'], start='10:30', end='11:30'))
    assert 'S1' in outcome.reason


def test_similar_content_classes(make_candidate):
    store = InMemoryDataStore()
    store.add_class(make_candidate('K1', 'T1', course_id='C2'))
    store.add_class(make_candidate('K2', 'T1', course_id='C3'))
    store.add_class(make_candidate('K3', 'T1', course_id='C4', enrolled=9))
    store.set_similarity('C1', 'C2', 0.6)
    store.set_similarity('C1', 'C3', 0.4)
    store.set_similarity('C1', 'C4', 0.9)

    matches = store.find_similar_content_classes('S1', 'C1', ['past tense'])

    assert [m.class_id for m in matches] == ['K1']
    assert store.content_similarity('C2', 'C1') == 0.6
    assert store.content_similarity('C1', 'C1') == 1.0


# --- Google Sheets store ---

def test_sheets_load(sheet_store):
    assert set(sheet_store.students) == {'S1', 'S2'}

    t1 = sheet_store.get_teacher('T1')
    assert t1.specializations == ['conversation', 'ielts']
    assert t1.availability == {1: [9, 10], 3: [14]}
    assert t1.max_class_size == 6
    # unparseable availability means always available
    assert sheet_store.get_teacher('T2').availability == {}
    assert sheet_store.get_teacher('T2').max_weekly_minutes == 600

    assert [t.id for t in sheet_store.list_course_teachers('C1')] == ['T1', 'T2']

    k1 = sheet_store.get_class('K1')
    assert k1.teacher_name == 'Ana'
    assert k1.available_spots == 5
    assert len(k1.schedules) == 2

    assert sheet_store.content_similarity('C2', 'C1') == pytest.approx(0.65)
    assert [c.id for c in sheet_store.scheduled] == ['class-old']
    assert sheet_store.get_slot_enrollment('slot-1-1000') == 1


def test_sheets_missing_required_worksheet(sheets, monkeypatch):
    del sheets['Students']
    monkeypatch.setattr(data_store, '_get_gspread_client', lambda path: FakeClient(FakeSpreadsheet(sheets)))
    with pytest.raises(DataStoreError, match="Worksheet not found: Students"):
        SheetsDataStore('ACADEMY').load()


def test_sheets_missing_spreadsheet(monkeypatch):
    monkeypatch.setattr(data_store, '_get_gspread_client', lambda path: FakeClient(None))
    with pytest.raises(DataStoreError, match="Spreadsheet not found"):
        SheetsDataStore('NOPE').load()


def test_sheets_commit_appends_row(sheet_store, sheets, make_class):
    outcome = sheet_store.commit_schedule(make_class('class-new', 'T2', ['S1'], day=2, start='09:00'))

    assert outcome.accepted
    row = sheets['ScheduledClasses'].appended[0]
    assert row[:7] == ['class-new', 'C1', 'T2', 'S1', 2, '09:00', '10:00']


def test_sheets_commit_rejects_taken_slot(sheet_store, sheets, make_class):
    outcome = sheet_store.commit_schedule(make_class('class-new', 'T1', ['S1'], day=1, start='10:00'))

    assert not outcome.accepted
    assert sheets['ScheduledClasses'].appended == []


def test_sheets_commit_creates_worksheet(sheets, monkeypatch, make_class):
    del sheets['ScheduledClasses']
    monkeypatch.setattr(data_store, '_get_gspread_client', lambda path: FakeClient(FakeSpreadsheet(sheets)))
    store = SheetsDataStore('ACADEMY').load()

    assert store.commit_schedule(make_class('class-new', 'T1', ['S1'])).accepted
    assert sheets['ScheduledClasses'].appended[0][0] == 'id'


def test_config_overrides(monkeypatch):
    sheets = {'Configuration': FakeWorksheet([
        {'parameter': 'constraints.max_students_per_class', 'value': 6},
        {'parameter': 'constraints.available_days', 'value': '1, 3, 5'},
        {'parameter': 'scoring_weights.resource_utilization', 'value': '0,02'},
        {'parameter': 'enable_optimization', 'value': 'false'},
    ])}
    monkeypatch.setattr(data_store, '_get_gspread_client', lambda path: FakeClient(FakeSpreadsheet(sheets)))

    overrides = load_config_overrides('ACADEMY')

    assert overrides == {
        'constraints': {'max_students_per_class': 6, 'available_days': (1, 3, 5)},
        'scoring_weights': {'resource_utilization': pytest.approx(0.02)},
        'enable_optimization': False,
    }


def test_config_overrides_without_worksheet(monkeypatch):
    monkeypatch.setattr(data_store, '_get_gspread_client', lambda path: FakeClient(FakeSpreadsheet({})))
    assert load_config_overrides('ACADEMY') == {}
