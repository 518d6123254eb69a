"""Smoke tests for the JSON shell: health, metrics, error envelopes and CORS."""

import importlib.util
import os
import sqlite3
import tempfile
from pathlib import Path

import pytest

os.environ.setdefault('SECRET_KEY', 'test-secret')

from app import app, init_db, rate_limited, REQUEST_METRICS


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
    )
    with app.app_context():
        init_db()
    with app.test_client() as c:
        yield c
    os.close(db_fd)
    os.unlink(db_path)


def test_health_endpoint(client):
    resp = client.get('/health')
    assert resp.status_code == 200
    assert resp.get_json()['status'] == 'ok'


def test_metrics_count_requests(client):
    before = REQUEST_METRICS['requests_total']
    client.get('/health')
    resp = client.get('/metrics')
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['requests_total'] >= before + 1
    assert 'avg_latency_ms' in body


def test_unknown_route_returns_json_404(client):
    resp = client.get('/api/does-not-exist')
    assert resp.status_code == 404
    assert resp.get_json() == {'error': 'Not found'}


def test_wrong_method_returns_json_405(client):
    resp = client.delete('/health')
    assert resp.status_code == 405
    assert 'error' in resp.get_json()


def test_protected_api_requires_login(client):
    resp = client.get('/api/workspaces')
    assert resp.status_code == 401
    assert resp.get_json()['error'] == 'Authentication required'


def test_rate_limit_handler_sets_reset_header():
    with app.test_request_context('/'):
        resp = rate_limited(None)
    assert resp.status_code == 429
    assert resp.headers.get('X-RateLimit-Reset')


def test_csrf_token_endpoint(client):
    resp = client.get('/api/csrf-token')
    assert resp.status_code == 200
    assert resp.get_json()['csrfToken']


def test_cors_headers_only_for_allowed_origin(client):
    app.config['CORS_ALLOWED_ORIGINS'] = ['http://localhost:5173']
    try:
        allowed = client.get('/health', headers={'Origin': 'http://localhost:5173'})
        blocked = client.get('/health', headers={'Origin': 'https://evil.example'})
    finally:
        app.config['CORS_ALLOWED_ORIGINS'] = []
    assert allowed.headers.get('Access-Control-Allow-Origin') == 'http://localhost:5173'
    assert 'Access-Control-Allow-Origin' not in blocked.headers


PROJECT_ROOT = Path(__file__).resolve().parent.parent


def load_module(name, path):
    spec = importlib.util.spec_from_file_location(name, path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def table_names(db_path):
    conn = sqlite3.connect(db_path)
    names = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    conn.close()
    return names


@pytest.mark.parametrize('entry_point', ['gunicorn.conf.py', 'api/index.py'])
def test_server_entry_points_create_schema(tmp_path, entry_point):
    db_path = tmp_path / 'fresh.db'
    previous = app.config['DATABASE_PATH']
    app.config['DATABASE_PATH'] = str(db_path)
    try:
        module = load_module(entry_point.replace('/', '_').replace('.', '_'), PROJECT_ROOT / entry_point)
        if hasattr(module, 'on_starting'):
            module.on_starting(None)
    finally:
        app.config['DATABASE_PATH'] = previous
    assert {'users', 'workspaces', 'user_journeys', 'ai_processing_jobs'} <= table_names(db_path)
