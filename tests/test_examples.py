import os
import tempfile
from io import BytesIO

import pytest

os.environ.setdefault('SECRET_KEY', 'test-secret')

from app import app, init_db
from services import ai_service, example_service


EXAMPLE = {
    'actor': 'Paralegal',
    'goal': 'Send an engagement letter',
    'entry_point': 'Matter dashboard',
    'actions': 'Opened the matter and clicked send',
    'error': 'Template was missing',
    'outcome': 'Emailed the client manually',
}


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
        OPENAI_API_KEY='test-key',
    )
    with app.app_context():
        init_db()
    with app.test_client() as c:
        yield c
    os.close(db_fd)
    os.unlink(db_path)


@pytest.fixture
def project_id(client):
    client.post('/api/auth/register', json={
        'full_name': 'Olive Owner',
        'email': 'owner@example.com',
        'password': 'StrongPass1',
    })
    workspace_id = client.post('/api/workspaces', json={'name': 'Research'}).get_json()['workspace']['id']
    return client.post(
        f'/api/workspaces/{workspace_id}/projects', json={'name': 'Onboarding'}
    ).get_json()['project']['id']


def test_enhance_trims_fields():
    enhanced = example_service.enhance_extracted_examples([{**EXAMPLE, 'actor': '  Paralegal  ', 'goal': None}])
    assert enhanced[0]['actor'] == 'Paralegal'
    assert enhanced[0]['goal'] == ''


def test_validate_extracted_only_rejects_exact_duplicates():
    near_duplicate = {**EXAMPLE, 'outcome': 'Gave up'}
    incomplete = {**EXAMPLE, 'error': ''}
    valid, invalid = example_service.validate_extracted_examples([EXAMPLE, dict(EXAMPLE), near_duplicate, incomplete])
    assert valid == [EXAMPLE, near_duplicate]
    assert invalid == [EXAMPLE, incomplete]


def test_validate_for_bulk_import_collects_errors():
    too_long = {**EXAMPLE, 'project_id': 1, 'actor': 'x' * 256}
    no_project = dict(EXAMPLE)
    valid, invalid = example_service.validate_examples_for_bulk_import([{**EXAMPLE, 'project_id': 1}, too_long, no_project])
    assert len(valid) == 1
    assert invalid[0]['errors'] == ['Actor is too long (max 255 characters)']
    assert invalid[1]['errors'] == ['Project ID is required']


def test_create_requires_all_fields(client, project_id):
    resp = client.post(f'/api/projects/{project_id}/examples', json={'actor': 'Paralegal'})
    assert resp.status_code == 400
    assert 'Goal is required' in resp.get_json()['errors']


def test_crud_and_actor_filter(client, project_id):
    created = client.post(f'/api/projects/{project_id}/examples', json=EXAMPLE).get_json()['example']
    client.post(f'/api/projects/{project_id}/examples', json={**EXAMPLE, 'actor': 'Partner'})

    filtered = client.get(f'/api/projects/{project_id}/examples?actor=para').get_json()
    assert filtered['count'] == 1
    assert filtered['examples'][0]['id'] == created['id']

    updated = client.patch(f"/api/examples/{created['id']}", json={'outcome': 'Resolved'}).get_json()['example']
    assert updated['outcome'] == 'Resolved'
    assert updated['actor'] == 'Paralegal'

    assert client.delete(f"/api/examples/{created['id']}").status_code == 200
    assert client.get(f"/api/examples/{created['id']}").status_code == 404
    assert client.get(f'/api/projects/{project_id}/examples/count').get_json()['count'] == 1


def test_bulk_import_and_stats(client, project_id):
    client.post(f'/api/projects/{project_id}/examples', json=EXAMPLE)
    resp = client.post(f'/api/projects/{project_id}/examples/bulk', json={
        'examples': [EXAMPLE, {**EXAMPLE, 'goal': ''}],
    })
    assert resp.status_code == 201
    body = resp.get_json()
    assert body['totalSuccessful'] == 1
    assert body['invalid'][0]['errors'] == ['Goal is required']
    assert body['success'][0]['import_source'] == 'screenshot'

    stats = client.get(f'/api/projects/{project_id}/examples/stats').get_json()
    assert stats == {'total': 2, 'imported': 1, 'manual': 1}


def test_csv_import(client, project_id):
    csv_text = (
        'actor,goal,entry_point,actions,error,outcome\n'
        'Paralegal,Send letter,Dashboard,Clicked send,Missing template,Emailed manually\n'
        'Partner,,Dashboard,Clicked,Failed,Gave up\n'
    )
    resp = client.post(
        f'/api/projects/{project_id}/examples/import',
        data={'file': (BytesIO(csv_text.encode('utf-8')), 'examples.csv')},
        content_type='multipart/form-data',
    )
    body = resp.get_json()
    assert body['totalSuccessful'] == 1
    assert len(body['invalid']) == 1
    stats = client.get(f'/api/projects/{project_id}/examples/stats').get_json()
    assert stats['imported'] == 1


def test_example_user_roles(client, project_id):
    example = client.post(f'/api/projects/{project_id}/examples', json=EXAMPLE).get_json()['example']
    workspace_id = client.get(f'/api/projects/{project_id}').get_json()['project']['workspace_id']
    role = client.post(f'/api/workspaces/{workspace_id}/user-roles', json={'name': 'Admin'}).get_json()['userRole']

    url = f"/api/examples/{example['id']}/user-roles"
    client.post(url, json={'user_role_id': role['id']})
    resp = client.post(url, json={'user_role_id': role['id']})
    assert [r['name'] for r in resp.get_json()['userRoles']] == ['Admin']

    assert client.delete(f"{url}/{role['id']}").status_code == 200
    assert client.delete(f"{url}/{role['id']}").status_code == 404


def test_exports(client, project_id):
    client.post(f'/api/projects/{project_id}/examples', json=EXAMPLE)
    csv_resp = client.get(f'/api/projects/{project_id}/examples/export.csv')
    assert csv_resp.status_code == 200
    assert b'Paralegal' in csv_resp.data

    pdf_resp = client.get(f'/api/projects/{project_id}/examples/export.pdf')
    assert pdf_resp.status_code == 200
    assert pdf_resp.data.startswith(b'%PDF')


def test_analyze_screenshot_saves_examples(client, project_id, monkeypatch):
    reply = ai_service.ModelReply(
        content='{"examples": [%s, %s]}' % (
            '{"actor": " Paralegal ", "goal": "g", "entry_point": "e", "actions": "a", "error": "x", "outcome": "o"}',
            '{"actor": "Paralegal", "goal": "g", "entry_point": "e", "actions": "a", "error": "x", "outcome": "o"}',
        ),
        usage={'total_tokens': 10},
        finish_reason='stop',
    )
    monkeypatch.setattr(ai_service, 'call_model', lambda messages, settings: reply)
    resp = client.post('/api/ai/analyze-screenshot', json={
        'base64Image': 'data:image/png;base64,AAAA',
        'projectId': project_id,
        'save': True,
    })
    assert resp.status_code == 200
    body = resp.get_json()
    assert len(body['examples']) == 1
    assert len(body['invalid']) == 1
    assert body['import']['totalSuccessful'] == 1
    assert client.get(f'/api/projects/{project_id}/examples/stats').get_json()['imported'] == 1
