import os
import tempfile

import pytest

os.environ.setdefault('SECRET_KEY', 'test-secret')

from app import app, init_db


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


def sign_in(client, email, full_name='Test User'):
    resp = client.post('/api/auth/register', json={
        'full_name': full_name,
        'email': email,
        'password': 'StrongPass1',
    })
    if resp.status_code == 409:
        client.post('/api/auth/login', json={'email': email, 'password': 'StrongPass1'})


def create_workspace(client, name='Research'):
    resp = client.post('/api/workspaces', json={'name': name})
    assert resp.status_code == 201
    return resp.get_json()['workspace']['id']


def test_creator_becomes_owner(client):
    sign_in(client, 'owner@example.com')
    workspace_id = create_workspace(client)
    members = client.get(f'/api/workspaces/{workspace_id}/members').get_json()['members']
    assert len(members) == 1
    assert members[0]['role'] == 'owner'
    assert members[0]['status'] == 'active'


def test_workspace_data_bundle(client):
    sign_in(client, 'owner@example.com')
    workspace_id = create_workspace(client)
    client.post(f'/api/workspaces/{workspace_id}/projects', json={'name': 'Onboarding'})
    body = client.get(f'/api/workspaces/{workspace_id}/data').get_json()
    assert body['workspace']['name'] == 'Research'
    assert [p['name'] for p in body['projects']] == ['Onboarding']
    assert [c['column_key'] for c in body['customColumns']] == ['top_4']
    for key in ('lawFirms', 'userRoles', 'stakeholders', 'researchNotes', 'examples'):
        assert body[key] == []


def test_non_member_gets_403(client):
    sign_in(client, 'owner@example.com')
    workspace_id = create_workspace(client)
    client.post('/api/auth/logout')

    sign_in(client, 'stranger@example.com')
    resp = client.get(f'/api/workspaces/{workspace_id}/data')
    assert resp.status_code == 403
    assert resp.get_json()['error'] == 'User does not have access to this workspace'


def test_missing_workspace_gets_404(client):
    sign_in(client, 'owner@example.com')
    resp = client.get('/api/workspaces/999/data')
    assert resp.status_code == 404


def test_invite_validation(client):
    sign_in(client, 'owner@example.com')
    workspace_id = create_workspace(client)
    url = f'/api/workspaces/{workspace_id}/members'

    missing = client.post(url, json={'email': 'a@example.com'})
    assert missing.status_code == 400
    assert missing.get_json()['error'] == 'Missing required fields: role'

    bad_role = client.post(url, json={'email': 'a@example.com', 'role': 'owner'})
    assert bad_role.get_json()['error'] == 'Invalid role. Must be admin or member'

    bad_team = client.post(url, json={'email': 'a@example.com', 'role': 'member', 'team': 'Legal'})
    assert bad_team.status_code == 400

    bad_email = client.post(url, json={'email': 'nope', 'role': 'member'})
    assert bad_email.get_json()['error'] == 'Invalid email format'


def test_invite_twice_conflicts(client):
    sign_in(client, 'owner@example.com')
    workspace_id = create_workspace(client)
    url = f'/api/workspaces/{workspace_id}/members'
    assert client.post(url, json={'email': 'a@example.com', 'role': 'member'}).status_code == 201
    resp = client.post(url, json={'email': 'A@example.com', 'role': 'admin'})
    assert resp.status_code == 409


def test_member_cannot_invite(client):
    sign_in(client, 'owner@example.com')
    workspace_id = create_workspace(client)
    client.post(f'/api/workspaces/{workspace_id}/members', json={'email': 'm@example.com', 'role': 'member'})
    client.post('/api/auth/logout')

    sign_in(client, 'm@example.com')
    resp = client.post(f'/api/workspaces/{workspace_id}/members', json={'email': 'x@example.com', 'role': 'member'})
    assert resp.status_code == 403


def test_owner_cannot_be_removed(client):
    sign_in(client, 'owner@example.com')
    workspace_id = create_workspace(client)
    owner = client.get(f'/api/workspaces/{workspace_id}/members').get_json()['members'][0]
    resp = client.delete(f"/api/workspaces/{workspace_id}/members/{owner['id']}")
    assert resp.status_code == 403


def test_remove_member(client):
    sign_in(client, 'owner@example.com')
    workspace_id = create_workspace(client)
    member = client.post(
        f'/api/workspaces/{workspace_id}/members', json={'email': 'm@example.com', 'role': 'member'}
    ).get_json()['member']
    resp = client.delete(f"/api/workspaces/{workspace_id}/members/{member['id']}")
    assert resp.status_code == 200
    assert len(client.get(f'/api/workspaces/{workspace_id}/members').get_json()['members']) == 1


def test_project_short_ids_increment(client):
    sign_in(client, 'owner@example.com')
    workspace_id = create_workspace(client)
    first = client.post(f'/api/workspaces/{workspace_id}/projects', json={'name': 'One'}).get_json()['project']
    second = client.post(f'/api/workspaces/{workspace_id}/projects', json={'name': 'Two'}).get_json()['project']
    assert second['short_id'] == first['short_id'] + 1


def test_research_note_stakeholder_links(client):
    sign_in(client, 'owner@example.com')
    workspace_id = create_workspace(client)
    project_id = client.post(
        f'/api/workspaces/{workspace_id}/projects', json={'name': 'One'}
    ).get_json()['project']['id']
    stakeholder_id = client.post(
        f'/api/workspaces/{workspace_id}/stakeholders', json={'name': 'Sam'}
    ).get_json()['stakeholder']['id']
    note = client.post(
        f'/api/projects/{project_id}/research-notes', json={'name': 'Call 1', 'note_date': '2024-03-01'}
    ).get_json()['researchNote']

    resp = client.put(f"/api/research-notes/{note['id']}/stakeholders", json={'stakeholderIds': [stakeholder_id]})
    assert resp.status_code == 200
    assert [s['name'] for s in resp.get_json()['researchNote']['stakeholders']] == ['Sam']

    bad_date = client.patch(f"/api/research-notes/{note['id']}", json={'note_date': 'yesterday'})
    assert bad_date.status_code == 400
