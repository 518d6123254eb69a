"""Saved user journeys: a named node/edge graph stored per project."""

from __future__ import annotations

import logging

from database import db_connect, deserialize_json, next_short_id, serialize_json, utcnow_iso

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 255
MAX_DESCRIPTION_LENGTH = 5000


class JourneyError(ValueError):
    status_code = 400


def clean_flow_data(flow_data):
    """Return ``{"nodes": [...], "edges": [...]}`` or raise ``JourneyError``."""
    if flow_data is None:
        return {'nodes': [], 'edges': []}
    if not isinstance(flow_data, dict) or not isinstance(flow_data.get('nodes', []), list):
        raise JourneyError('flow_data must be an object with a nodes list')
    edges = flow_data.get('edges')
    return {
        'nodes': flow_data.get('nodes', []),
        'edges': edges if isinstance(edges, list) else [],
    }


def _clean_name(name):
    name = (name or '').strip()
    if not name:
        raise JourneyError('Journey name is required')
    if len(name) > MAX_NAME_LENGTH:
        raise JourneyError(f'Journey name must be at most {MAX_NAME_LENGTH} characters')
    return name


def _clean_description(description):
    description = (description or '').strip()
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise JourneyError(f'Description must be at most {MAX_DESCRIPTION_LENGTH} characters')
    return description


def _journey_from_row(row):
    journey = dict(row)
    journey['flow_data'] = deserialize_json(journey['flow_data'], {'nodes': [], 'edges': []})
    return journey


def list_journeys(project_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        'SELECT * FROM user_journeys WHERE project_id = ? ORDER BY created_at DESC, id DESC',
        (project_id,),
    )
    journeys = [_journey_from_row(row) for row in c.fetchall()]
    conn.close()
    return journeys


def get_journey(journey_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT * FROM user_journeys WHERE id = ?', (journey_id,))
    row = c.fetchone()
    conn.close()
    return _journey_from_row(row) if row else None


def create_journey(project_id, name, description='', flow_data=None, created_by=None, source_job_id=None):
    name = _clean_name(name)
    description = _clean_description(description)
    flow_data = clean_flow_data(flow_data)

    now = utcnow_iso()
    conn = db_connect()
    c = conn.cursor()
    short_id = next_short_id(c, 'user_journeys', 'project_id', project_id)
    c.execute(
        '''
        INSERT INTO user_journeys (
            project_id, name, description, flow_data, short_id, source_job_id,
            created_by, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''',
        (project_id, name, description, serialize_json(flow_data), short_id, source_job_id, created_by, now, now),
    )
    journey_id = c.lastrowid
    conn.commit()
    conn.close()
    logger.info('Created journey %s in project %s (%s nodes)', journey_id, project_id, len(flow_data['nodes']))
    return get_journey(journey_id)


def create_journey_from_job(job, project_id, name=None, description=None, created_by=None):
    """Save the graph a completed AI job produced as a new journey."""
    result = job.get('result_data')
    if job.get('status') != 'completed' or not isinstance(result, dict):
        raise JourneyError('Only completed jobs with a result can be saved')
    return create_journey(
        project_id,
        name or result.get('name') or 'Untitled journey',
        description if description is not None else result.get('description', ''),
        {'nodes': result.get('nodes', []), 'edges': result.get('edges', [])},
        created_by=created_by,
        source_job_id=job['id'],
    )


def update_journey(journey_id, updates):
    changes = {}
    if 'name' in updates:
        changes['name'] = _clean_name(updates['name'])
    if 'description' in updates:
        changes['description'] = _clean_description(updates['description'])
    if 'flow_data' in updates:
        changes['flow_data'] = serialize_json(clean_flow_data(updates['flow_data']))
    if not changes:
        return get_journey(journey_id)

    assignments = ', '.join(f'{key} = ?' for key in changes)
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        f'UPDATE user_journeys SET {assignments}, updated_at = ? WHERE id = ?',
        (*changes.values(), utcnow_iso(), journey_id),
    )
    conn.commit()
    conn.close()
    return get_journey(journey_id)


def delete_journey(journey_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute('DELETE FROM user_journeys WHERE id = ?', (journey_id,))
    deleted = c.rowcount
    conn.commit()
    conn.close()
    return deleted > 0
