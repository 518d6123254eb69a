import logging
import os
import sqlite3
import tempfile
import time
from concurrent.futures import Future
from datetime import datetime, timedelta, timezone

import pytest

os.environ.setdefault('SECRET_KEY', 'test-secret')

from app import app, db_connect, init_db
from services import ai_service, job_service


JOURNEY = '{"nodes": [{"id": "1", "data": {"label": "Start"}}], "edges": []}'


@pytest.fixture
def client():
    db_fd, db_path = tempfile.mkstemp()
    app.config.update(
        DATABASE_PATH=db_path,
        TESTING=True,
        WTF_CSRF_ENABLED=False,
        MAIL_ENABLED=False,
        SESSION_COOKIE_SECURE=False,
        JOB_DISPATCH_MODE='inline',
        JOB_PROCESS_SECRET='job-secret',
        OPENAI_API_KEY='test-key',
    )
    with app.app_context():
        init_db()
    with app.test_client() as c:
        c.post('/api/auth/register', json={
            'full_name': 'Olive Owner',
            'email': 'owner@example.com',
            'password': 'StrongPass1',
        })
        yield c
    os.close(db_fd)
    os.unlink(db_path)


def reply_with(content=JOURNEY, finish_reason='stop'):
    reply = ai_service.ModelReply(content=content, usage={'total_tokens': 7}, finish_reason=finish_reason)
    return lambda messages, settings: reply


def test_transcript_job_completes(client, monkeypatch):
    monkeypatch.setattr(ai_service, 'call_model', reply_with())
    resp = client.post('/api/jobs/transcript/start', json={'transcript': 'We talked about onboarding.'})
    assert resp.status_code == 202
    body = resp.get_json()
    assert body['status'] == 'processing'

    status = client.get(f"/api/jobs/{body['jobId']}").get_json()
    assert status['status'] == 'completed'
    assert status['jobType'] == 'transcript'
    assert status['result']['nodes'][0]['id'] == '1'
    assert status['metadata'] == {'usage': {'total_tokens': 7}, 'finishReason': 'stop'}
    assert status['completedAt']


def test_job_input_summary_does_not_store_transcript(client, monkeypatch):
    monkeypatch.setattr(ai_service, 'call_model', reply_with())
    job_id = client.post('/api/jobs/transcript/start', json={'transcript': 'secret words'}).get_json()['jobId']
    with app.app_context():
        job = job_service.get_job(job_id)
    assert job['input_data'] == {'transcriptLength': 12, 'promptLength': job['input_data']['promptLength']}


def test_failed_model_call_marks_job_failed(client, monkeypatch):
    monkeypatch.setattr(ai_service, 'call_model', reply_with(content='I cannot help'))
    job_id = client.post('/api/jobs/edit-journey/start', json={
        'currentJourney': {'nodes': [{'id': '1'}], 'edges': []},
        'instruction': 'Add a step',
    }).get_json()['jobId']
    status = client.get(f'/api/jobs/{job_id}').get_json()
    assert status['status'] == 'failed'
    assert 'Could not find JSON' in status['error']
    assert status['result'] is None


def test_truncated_job_fails_with_message(client, monkeypatch):
    monkeypatch.setattr(ai_service, 'call_model', reply_with(finish_reason='length'))
    job_id = client.post('/api/jobs/diagram/start', json={
        'base64Image': 'data:image/png;base64,AAAA',
    }).get_json()['jobId']
    status = client.get(f'/api/jobs/{job_id}').get_json()
    assert status['error'] == ai_service.TRUNCATED_MESSAGE


def test_start_validates_payload(client):
    missing = client.post('/api/jobs/transcript/start', json={})
    assert missing.status_code == 400
    assert missing.get_json()['error'] == 'Missing required fields: transcript'

    no_nodes = client.post('/api/jobs/edit-journey/start', json={'currentJourney': {}, 'instruction': 'x'})
    assert no_nodes.get_json()['error'] == 'Current journey with nodes is required'

    unknown = client.post('/api/jobs/podcast/start', json={})
    assert unknown.status_code == 404

    with app.app_context():
        assert job_service.list_jobs(1) == []


def test_terminal_state_is_written_once(client):
    with app.app_context():
        job_id = job_service.create_job(1, 'transcript', {})
        assert job_service.complete_job(job_id, {'nodes': [1], 'edges': []}) is True
        assert job_service.fail_job(job_id, 'late failure') is False
        job = job_service.get_job(job_id)
    assert job['status'] == 'completed'
    assert job['error_message'] is None


def test_dispatch_failure_marks_job_failed(client, monkeypatch):
    class ClosedPool:
        def submit(self, fn):
            raise RuntimeError('cannot schedule new futures after shutdown')

    app.config['JOB_DISPATCH_MODE'] = 'thread'
    monkeypatch.setattr(job_service, '_get_executor', lambda app: ClosedPool())
    try:
        with app.app_context():
            job_id = job_service.create_job(1, 'transcript', {})
            job_service.dispatch_job(app, job_id, 'transcript', {'transcript': 't', 'prompt': 'p'})
            job = job_service.get_job(job_id)
    finally:
        app.config['JOB_DISPATCH_MODE'] = 'inline'
    assert job['status'] == 'failed'
    assert job['error_message'] == job_service.DISPATCH_FAILED_MESSAGE


def test_other_users_cannot_see_job(client, monkeypatch):
    monkeypatch.setattr(ai_service, 'call_model', reply_with())
    job_id = client.post('/api/jobs/transcript/start', json={'transcript': 'hello'}).get_json()['jobId']
    client.post('/api/auth/logout')
    client.post('/api/auth/register', json={
        'full_name': 'Other Person',
        'email': 'other@example.com',
        'password': 'StrongPass1',
    })
    assert client.get(f'/api/jobs/{job_id}').status_code == 404
    assert client.get('/api/jobs').get_json()['jobs'] == []


def test_process_route_requires_secret(client, monkeypatch):
    monkeypatch.setattr(ai_service, 'call_model', reply_with())
    with app.app_context():
        job_id = job_service.create_job(1, 'transcript', {})

    forbidden = client.post(f'/api/jobs/{job_id}/process', json={'transcript': 't'})
    assert forbidden.status_code == 403

    ok = client.post(
        f'/api/jobs/{job_id}/process',
        json={'transcript': 't'},
        headers={'X-Job-Secret': 'job-secret'},
    )
    assert ok.status_code == 200
    assert ok.get_json()['status'] == 'completed'

    again = client.post(
        f'/api/jobs/{job_id}/process',
        json={'transcript': 't'},
        headers={'X-Job-Secret': 'job-secret'},
    )
    assert again.status_code == 409


def test_expire_stale_jobs(client):
    old = (datetime.now(timezone.utc) - timedelta(hours=2)).isoformat()
    with app.app_context():
        stale_id = job_service.create_job(1, 'diagram', {})
        fresh_id = job_service.create_job(1, 'diagram', {})
        conn = db_connect(); c = conn.cursor()
        c.execute('UPDATE ai_processing_jobs SET created_at = ? WHERE id = ?', (old, stale_id))
        conn.commit(); conn.close()

        assert job_service.expire_stale_jobs(30) == 1
        assert job_service.get_job(stale_id)['status'] == 'failed'
        assert job_service.get_job(stale_id)['error_message'] == job_service.STALE_JOB_MESSAGE
        assert job_service.get_job(fresh_id)['status'] == 'processing'


def test_failed_final_write_still_marks_job_failed(client, monkeypatch):
    def locked(*args, **kwargs):
        raise sqlite3.OperationalError('database is locked')

    monkeypatch.setattr(ai_service, 'call_model', reply_with())
    monkeypatch.setattr(job_service, 'complete_job', locked)
    resp = client.post('/api/jobs/transcript/start', json={'transcript': 'We talked.'})
    assert resp.status_code == 202

    status = client.get(f"/api/jobs/{resp.get_json()['jobId']}").get_json()
    assert status['status'] == 'failed'
    assert status['error'] == 'database is locked'


def test_thread_dispatch_reaches_terminal_state(client, monkeypatch):
    monkeypatch.setattr(ai_service, 'call_model', reply_with())
    app.config['JOB_DISPATCH_MODE'] = 'thread'
    try:
        job_id = client.post('/api/jobs/transcript/start', json={'transcript': 'We talked.'}).get_json()['jobId']
        deadline = time.monotonic() + 10
        status = client.get(f'/api/jobs/{job_id}').get_json()
        while status['status'] == 'processing' and time.monotonic() < deadline:
            time.sleep(0.05)
            status = client.get(f'/api/jobs/{job_id}').get_json()
    finally:
        app.config['JOB_DISPATCH_MODE'] = 'inline'
    assert status['status'] == 'completed'
    assert status['result']['nodes'][0]['id'] == '1'


def test_pool_exceptions_are_logged(caplog):
    future = Future()
    future.set_exception(RuntimeError('boom'))
    with caplog.at_level(logging.ERROR, logger='services.job_service'):
        job_service._log_unhandled('job-123')(future)
    assert '[job-123] Job thread raised' in caplog.text
