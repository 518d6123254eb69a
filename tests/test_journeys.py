import os
import tempfile

import pytest

os.environ.setdefault('SECRET_KEY', 'test-secret')

from app import app, init_db
from services import ai_service


JOURNEY = (
    '{"name": "Client onboarding", "description": "From invite to first matter", '
    '"nodes": [{"id": "node-1", "data": {"label": "Invite"}}, {"id": "node-2", "data": {"label": "Sign"}}], '
    '"edges": [{"id": "edge-1-2", "source": "node-1", "target": "node-2"}]}'
)


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


def fake_reply(content=JOURNEY):
    reply = ai_service.ModelReply(content=content, usage={'total_tokens': 5}, finish_reason='stop')
    return lambda messages, settings: reply


def test_create_and_list_journeys(client, project_id):
    url = f'/api/projects/{project_id}/user-journeys'
    first = client.post(url, json={'name': 'Empty draft'})
    assert first.status_code == 201
    assert first.get_json()['userJourney']['flow_data'] == {'nodes': [], 'edges': []}

    second = client.post(url, json={
        'name': 'Sign up',
        'description': 'Self-serve',
        'flow_data': {'nodes': [{'id': 'a'}]},
    }).get_json()['userJourney']
    assert second['flow_data']['edges'] == []
    assert second['short_id'] == first.get_json()['userJourney']['short_id'] + 1

    names = [j['name'] for j in client.get(url).get_json()['userJourneys']]
    assert sorted(names) == ['Empty draft', 'Sign up']


def test_create_validates_input(client, project_id):
    url = f'/api/projects/{project_id}/user-journeys'
    assert client.post(url, json={}).get_json()['error'] == 'Journey name is required'
    bad_flow = client.post(url, json={'name': 'x', 'flow_data': {'nodes': 'nope'}})
    assert bad_flow.status_code == 400


def test_update_and_delete_journey(client, project_id):
    journey = client.post(
        f'/api/projects/{project_id}/user-journeys', json={'name': 'Draft'}
    ).get_json()['userJourney']
    url = f"/api/user-journeys/{journey['id']}"

    updated = client.patch(url, json={
        'name': 'Final',
        'flow_data': {'nodes': [{'id': 'a'}, {'id': 'b'}], 'edges': [{'id': 'e', 'source': 'a', 'target': 'b'}]},
    }).get_json()['userJourney']
    assert updated['name'] == 'Final'
    assert len(updated['flow_data']['nodes']) == 2

    assert client.delete(url).status_code == 200
    assert client.get(url).status_code == 404


def test_workspace_data_lists_journeys(client, project_id):
    client.post(f'/api/projects/{project_id}/user-journeys', json={'name': 'Draft'})
    workspace_id = client.get(f'/api/projects/{project_id}').get_json()['project']['workspace_id']
    data = client.get(f'/api/workspaces/{workspace_id}/data').get_json()
    assert [j['name'] for j in data['userJourneys']] == ['Draft']


def test_save_completed_job_as_journey(client, project_id, monkeypatch):
    monkeypatch.setattr(ai_service, 'call_model', fake_reply())
    job_id = client.post('/api/jobs/transcript/start', json={'transcript': 'We talked.'}).get_json()['jobId']

    resp = client.post(f'/api/jobs/{job_id}/save', json={'projectId': project_id})
    assert resp.status_code == 201
    journey = resp.get_json()['userJourney']
    assert journey['name'] == 'Client onboarding'
    assert journey['description'] == 'From invite to first matter'
    assert journey['source_job_id'] == job_id
    assert [n['id'] for n in journey['flow_data']['nodes']] == ['node-1', 'node-2']
    assert journey['flow_data']['edges'][0]['target'] == 'node-2'

    renamed = client.post(f'/api/jobs/{job_id}/save', json={'projectId': project_id, 'name': 'Copy'})
    assert renamed.get_json()['userJourney']['name'] == 'Copy'


def test_failed_job_cannot_be_saved(client, project_id, monkeypatch):
    monkeypatch.setattr(ai_service, 'call_model', fake_reply(content='no json'))
    job_id = client.post('/api/jobs/transcript/start', json={'transcript': 'We talked.'}).get_json()['jobId']
    resp = client.post(f'/api/jobs/{job_id}/save', json={'projectId': project_id})
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Only completed jobs with a result can be saved'

    missing = client.post(f'/api/jobs/{job_id}/save', json={})
    assert missing.get_json()['error'] == 'Missing required fields: projectId'


def test_journeys_are_private_to_workspace(client, project_id, monkeypatch):
    journey = client.post(
        f'/api/projects/{project_id}/user-journeys', json={'name': 'Draft'}
    ).get_json()['userJourney']
    monkeypatch.setattr(ai_service, 'call_model', fake_reply())
    job_id = client.post('/api/jobs/transcript/start', json={'transcript': 'We talked.'}).get_json()['jobId']
    client.post('/api/auth/logout')
    client.post('/api/auth/register', json={
        'full_name': 'Other Person',
        'email': 'other@example.com',
        'password': 'StrongPass1',
    })
    assert client.get(f"/api/user-journeys/{journey['id']}").status_code == 403
    assert client.get(f'/api/projects/{project_id}/user-journeys').status_code == 403
    assert client.post(f'/api/jobs/{job_id}/save', json={'projectId': project_id}).status_code == 404
