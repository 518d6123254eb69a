import os
import tempfile

import pytest

os.environ.setdefault('SECRET_KEY', 'test-secret')

from app import app, db_connect, init_db


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


def register(client, email='owner@example.com', password='StrongPass1', full_name='Olive Owner'):
    return client.post('/api/auth/register', json={
        'full_name': full_name,
        'email': email,
        'password': password,
    })


def test_register_rejects_weak_password(client):
    resp = register(client, password='weak')
    assert resp.status_code == 400
    assert resp.get_json()['fields']['password'] == 'Password must be at least 8 characters long.'


def test_register_rejects_invalid_email(client):
    resp = register(client, email='not-an-email')
    assert resp.status_code == 400
    assert 'email' in resp.get_json()['fields']


def test_register_and_login_success(client):
    resp = register(client)
    assert resp.status_code == 201
    assert resp.get_json()['user']['email'] == 'owner@example.com'

    client.post('/api/auth/logout')
    login_resp = client.post('/api/auth/login', json={
        'email': 'OWNER@example.com',
        'password': 'StrongPass1',
    })
    assert login_resp.status_code == 200
    me = client.get('/api/auth/me')
    assert me.status_code == 200
    assert me.get_json()['user']['full_name'] == 'Olive Owner'


def test_duplicate_registration_conflicts(client):
    register(client)
    client.post('/api/auth/logout')
    resp = register(client)
    assert resp.status_code == 409


def test_invalid_login(client):
    register(client)
    client.post('/api/auth/logout')
    resp = client.post('/api/auth/login', json={'email': 'owner@example.com', 'password': 'WrongPass1'})
    assert resp.status_code == 401
    assert 'Sign-in failed' in resp.get_json()['error']


def test_logout_requires_session(client):
    resp = client.post('/api/auth/logout')
    assert resp.status_code == 401


def test_password_is_hashed(client):
    register(client)
    with app.app_context():
        conn = db_connect(); c = conn.cursor()
        c.execute('SELECT password_hash FROM users WHERE email = ?', ('owner@example.com',))
        stored = c.fetchone()[0]
        conn.close()
    assert stored != 'StrongPass1'


def test_pending_invite_activates_on_register(client):
    register(client)
    workspace_id = client.post('/api/workspaces', json={'name': 'Research'}).get_json()['workspace']['id']
    invite = client.post(f'/api/workspaces/{workspace_id}/members', json={
        'email': 'new@example.com',
        'role': 'member',
        'team': 'Design',
    })
    assert invite.status_code == 201
    assert invite.get_json()['member']['status'] == 'pending'
    client.post('/api/auth/logout')

    register(client, email='new@example.com', full_name='Nina New')
    resp = client.get(f'/api/workspaces/{workspace_id}/data')
    assert resp.status_code == 200
    workspaces = client.get('/api/workspaces').get_json()['workspaces']
    assert [w['id'] for w in workspaces] == [workspace_id]
    assert workspaces[0]['role'] == 'member'
