"""Example records: validation helpers, bulk import and CRUD queries."""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from database import db_connect, next_short_id, row_to_dict, utcnow_iso

logger = logging.getLogger(__name__)

NARRATIVE_FIELDS = ('actor', 'goal', 'entry_point', 'actions', 'error', 'outcome')

FIELD_LIMITS = {
    'actor': 255,
    'goal': 1000,
    'entry_point': 1000,
    'actions': 2000,
    'error': 1000,
    'outcome': 2000,
}

REQUIRED_MESSAGES = {
    'actor': 'Actor is required',
    'goal': 'Goal is required',
    'entry_point': 'Entry point is required',
    'actions': 'Actions are required',
    'error': 'Error is required',
    'outcome': 'Outcome is required',
}

TOO_LONG_MESSAGES = {
    'actor': 'Actor is too long (max 255 characters)',
    'goal': 'Goal is too long (max 1000 characters)',
    'entry_point': 'Entry point is too long (max 1000 characters)',
    'actions': 'Actions are too long (max 2000 characters)',
    'error': 'Error is too long (max 1000 characters)',
    'outcome': 'Outcome is too long (max 2000 characters)',
}

IMPORT_SOURCES = ('manual', 'screenshot', 'csv')


class ExampleValidationError(ValueError):
    def __init__(self, errors):
        super().__init__('; '.join(errors))
        self.errors = list(errors)


# ===== EXTRACTED EXAMPLE HELPERS =====

def enhance_extracted_examples(examples):
    """Trim whitespace from every narrative field."""
    enhanced = []
    for example in examples:
        cleaned = dict(example)
        for name in NARRATIVE_FIELDS:
            cleaned[name] = str(example.get(name) or '').strip()
        enhanced.append(cleaned)
    return enhanced


def validate_extracted_examples(examples):
    """Split extracted examples into ``(valid, invalid)``.

    Incomplete examples are invalid. Among complete ones, only an exact
    duplicate of an earlier example (all six fields equal) is rejected.
    """
    valid = []
    invalid = []
    seen = set()
    for example in examples:
        if not all(example.get(name) for name in NARRATIVE_FIELDS):
            invalid.append(example)
            continue
        key = tuple(example[name] for name in NARRATIVE_FIELDS)
        if key in seen:
            invalid.append(example)
        else:
            seen.add(key)
            valid.append(example)
    return valid, invalid


def validate_example_fields(example, partial=False):
    errors = []
    for name in NARRATIVE_FIELDS:
        if partial and name not in example:
            continue
        value = example.get(name)
        if not value or not str(value).strip():
            errors.append(REQUIRED_MESSAGES[name])
        elif len(str(value)) > FIELD_LIMITS[name]:
            errors.append(TOO_LONG_MESSAGES[name])
    return errors


def validate_examples_for_bulk_import(examples):
    """Return ``(valid, invalid)`` where invalid items carry their error list."""
    valid = []
    invalid = []
    for example in examples:
        errors = []
        if not example.get('project_id'):
            errors.append('Project ID is required')
        errors.extend(validate_example_fields(example))
        if errors:
            invalid.append({'example': example, 'errors': errors})
        else:
            valid.append(example)
    return valid, invalid


# ===== QUERIES =====

def list_examples(project_id, actor: Optional[str] = None):
    conn = db_connect()
    c = conn.cursor()
    if actor:
        c.execute(
            '''
            SELECT * FROM examples
            WHERE project_id = ? AND actor LIKE ? COLLATE NOCASE
            ORDER BY created_at DESC, id DESC
            ''',
            (project_id, f'%{actor}%'),
        )
    else:
        c.execute(
            'SELECT * FROM examples WHERE project_id = ? ORDER BY created_at DESC, id DESC',
            (project_id,),
        )
    rows = [dict(row) for row in c.fetchall()]
    conn.close()
    return rows


def count_examples(project_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT COUNT(*) FROM examples WHERE project_id = ?', (project_id,))
    total = c.fetchone()[0]
    conn.close()
    return total


def get_example(example_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT * FROM examples WHERE id = ?', (example_id,))
    row = row_to_dict(c.fetchone())
    conn.close()
    return row


def _insert_example(c, project_id, example, created_by, import_source):
    now = utcnow_iso()
    short_id = next_short_id(c, 'examples', 'project_id', project_id)
    c.execute(
        '''
        INSERT INTO examples (
            project_id, short_id, actor, goal, entry_point, actions, error, outcome,
            import_source, created_by, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''',
        (
            project_id,
            short_id,
            *(str(example[name]).strip() for name in NARRATIVE_FIELDS),
            import_source,
            created_by,
            now,
            now,
        ),
    )
    return c.lastrowid


def create_example(project_id, example, created_by=None, import_source='manual'):
    errors = validate_example_fields(example)
    if import_source not in IMPORT_SOURCES:
        errors.append(f'Unknown import source: {import_source}')
    if errors:
        raise ExampleValidationError(errors)

    conn = db_connect()
    c = conn.cursor()
    example_id = _insert_example(c, project_id, example, created_by, import_source)
    conn.commit()
    conn.close()
    return get_example(example_id)


def update_example(example_id, updates):
    changes = {name: updates[name] for name in NARRATIVE_FIELDS if name in updates}
    errors = validate_example_fields(changes, partial=True)
    if errors:
        raise ExampleValidationError(errors)
    if not changes:
        return get_example(example_id)

    assignments = ', '.join(f'{name} = ?' for name in changes)
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        f'UPDATE examples SET {assignments}, updated_at = ? WHERE id = ?',
        (*(str(value).strip() for value in changes.values()), utcnow_iso(), example_id),
    )
    conn.commit()
    conn.close()
    return get_example(example_id)


def delete_example(example_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute('DELETE FROM examples WHERE id = ?', (example_id,))
    deleted = c.rowcount
    conn.commit()
    conn.close()
    return deleted > 0


def bulk_create_examples(project_id, examples, created_by=None, import_source='screenshot'):
    """Insert examples one at a time so a bad row does not sink the batch."""
    result = {
        'success': [],
        'failed': [],
        'totalProcessed': len(examples),
        'totalSuccessful': 0,
        'totalFailed': 0,
    }
    for example in examples:
        try:
            created = create_example(project_id, example, created_by, import_source)
        except (ExampleValidationError, sqlite3.Error) as exc:
            logger.warning('Bulk example insert failed for project %s: %s', project_id, exc)
            result['failed'].append({'example': example, 'error': str(exc)})
            result['totalFailed'] += 1
            continue
        result['success'].append(created)
        result['totalSuccessful'] += 1
    return result


def get_import_statistics(project_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT import_source FROM examples WHERE project_id = ?', (project_id,))
    sources = [row[0] for row in c.fetchall()]
    conn.close()
    return {
        'total': len(sources),
        'imported': sum(1 for source in sources if source in ('screenshot', 'csv')),
        'manual': sum(1 for source in sources if not source or source == 'manual'),
    }


# ===== USER ROLE LINKS =====

def list_example_user_roles(example_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        SELECT ur.* FROM user_roles ur
        INNER JOIN example_user_roles eur ON eur.user_role_id = ur.id
        WHERE eur.example_id = ?
        ORDER BY ur.name
        ''',
        (example_id,),
    )
    rows = [dict(row) for row in c.fetchall()]
    conn.close()
    return rows


def add_example_user_role(example_id, user_role_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        'INSERT OR IGNORE INTO example_user_roles (example_id, user_role_id, created_at) VALUES (?, ?, ?)',
        (example_id, user_role_id, utcnow_iso()),
    )
    conn.commit()
    conn.close()


def remove_example_user_role(example_id, user_role_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        'DELETE FROM example_user_roles WHERE example_id = ? AND user_role_id = ?',
        (example_id, user_role_id),
    )
    removed = c.rowcount
    conn.commit()
    conn.close()
    return removed > 0
