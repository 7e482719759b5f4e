import pytest
from fastapi.testclient import TestClient

from academy_scheduler import api
from academy_scheduler.auth import get_current_user
from academy_scheduler.model import SchedulingRequest


@pytest.fixture
def client(service, make_candidate):
    service.store.add_class(make_candidate('K0', 'T1', day=1))
    service.store.add_class(make_candidate('K1', 'T2', day=2))

    api.app.dependency_overrides[api.get_service] = lambda: service
    api.app.dependency_overrides[get_current_user] = lambda: 'user-1'
    api.jobs.clear()
    api.results.clear()
    yield TestClient(api.app)
    api.app.dependency_overrides.clear()
    api.jobs.clear()
    api.results.clear()


SCHEDULE_PAYLOAD = {'id': 'R1', 'course_id': 'C1', 'student_ids': ['S1', 'S2']}


def test_root(client):
    response = client.get('/')
    assert response.status_code == 200
    assert response.json() == {'status': 'online', 'system': 'Academy Scheduler'}


def test_health(client):
    response = client.get('/health')
    assert response.status_code == 200
    assert response.json()['status'] == 'healthy'


def test_schedule(client):
    response = client.post('/schedule', json=SCHEDULE_PAYLOAD)

    assert response.status_code == 200
    body = response.json()
    assert body['success'] is True
    assert body['scheduled_classes'][0]['teacher_id'] == 'T1'
    assert body['scheduled_classes'][0]['time_slot']['day_of_week'] == 1
    assert 'R1' in api.results


def test_schedule_validation_error_is_400(client):
    response = client.post('/schedule', json={'course_id': 'C1', 'student_ids': ['S99']})
    assert response.status_code == 400
    assert response.json() == {'detail': 'Student not found: S99', 'category': 'validation'}


def test_schedule_rejects_bad_priority(client):
    response = client.post('/schedule', json={**SCHEDULE_PAYLOAD, 'priority': 'asap'})
    assert response.status_code == 422


def test_schedule_requires_auth(service):
    api.app.dependency_overrides[api.get_service] = lambda: service
    try:
        response = TestClient(api.app).post('/schedule', json=SCHEDULE_PAYLOAD)
    finally:
        api.app.dependency_overrides.clear()
    assert response.status_code in (401, 403)


def test_schedule_job_lifecycle(client):
    started = client.post('/schedule/jobs', json=SCHEDULE_PAYLOAD)
    assert started.status_code == 200
    job_id = started.json()['job_id']
    assert started.json()['request_id'] == 'R1'

    # background tasks run before the test client returns
    job = client.get(f'/jobs/{job_id}').json()
    assert job['status'] == 'completed'
    assert job['result']['success'] is True

    cancel = client.post(f'/jobs/{job_id}/cancel')
    assert cancel.json() == {'status': 'job_already_finished'}


def test_cancel_running_job(client):
    api.jobs['j1'] = {'status': 'running', 'request_id': 'R9', 'result': None, 'error': None}
    assert client.post('/jobs/j1/cancel').json() == {'status': 'cancelled'}
    assert api.jobs['j1']['status'] == 'cancelled'


def test_cancelled_job_stays_cancelled(service):
    api.jobs['j2'] = {'status': 'cancelled', 'request_id': 'R2', 'result': None, 'error': None}
    try:
        api.run_schedule_job('j2', SchedulingRequest(id='R2', course_id='C1', student_ids=('S1',)), service)
        assert api.jobs['j2']['status'] == 'cancelled'
        assert api.jobs['j2']['result']['error']['category'] == 'cancelled'
    finally:
        api.jobs.clear()
        api.results.clear()


def test_unknown_job(client):
    assert client.get('/jobs/missing').status_code == 404
    assert client.post('/jobs/missing/cancel').status_code == 404


def test_commit(client, service):
    client.post('/schedule', json=SCHEDULE_PAYLOAD)

    response = client.post('/schedule/commit', json={'request_id': 'R1'})

    assert response.status_code == 200
    assert [c['id'] for c in response.json()['committed']] == ['class-R1']
    assert len(service.store.scheduled) == 1
    assert 'R1' not in api.results


def test_commit_unknown_request(client):
    assert client.post('/schedule/commit', json={'request_id': 'nope'}).status_code == 404


def test_makeup_suggestions(client):
    response = client.post('/makeup-suggestions', json={
        'student_id': 'S1',
        'original_class_id': 'K0',
        'reference_time': '2026-10-18T12:00:00',
    })

    assert response.status_code == 200
    body = response.json()
    assert body['count'] == 1
    assert body['suggestions'][0]['class_id'] == 'K1'


def test_makeup_unknown_class(client):
    response = client.post('/makeup-suggestions', json={'student_id': 'S1', 'original_class_id': 'nope'})
    assert response.status_code == 400


def test_optimize(client):
    response = client.post('/optimize', json={
        'decisions': [
            {'id': 'd1', 'course_id': 'C1', 'student_ids': ['S1'], 'teacher_id': 'T1',
             'time_slot': {'day_of_week': 1, 'start_time': '10:00', 'end_time': '11:00'}},
            {'id': 'd2', 'course_id': 'C1', 'student_ids': ['S2'], 'teacher_id': 'T1',
             'time_slot': {'day_of_week': 1, 'start_time': '10:00', 'end_time': '11:00'}},
        ],
        'alternative_count': 0,
    })

    assert response.status_code == 200
    body = response.json()
    assert body['unresolved_conflicts'] == []
    assert body['alternative_solutions'] == []
    assert len(body['scheduled_classes']) == 2


def test_config_roundtrip(client):
    assert client.get('/config').json()['constraints']['max_students_per_class'] == 9

    response = client.patch('/config', json={'constraints': {'max_students_per_class': 6}})

    assert response.status_code == 200
    assert response.json()['constraints']['max_students_per_class'] == 6


def test_invalid_config_is_400(client):
    response = client.patch('/config', json={'scoring_weights': {'resource_utilization': 0.9}})
    assert response.status_code == 400
    assert response.json()['category'] == 'configuration'


def test_makeup_naive_date_bounds_without_reference_time(client):
    response = client.post('/makeup-suggestions', json={
        'student_id': 'S1',
        'original_class_id': 'K0',
        'constraints': {'earliest_date': '2026-10-20T09:00:00', 'latest_date': '2027-10-20T09:00:00'},
    })

    assert response.status_code == 200
