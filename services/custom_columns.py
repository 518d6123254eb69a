"""User-defined law firm columns and the JSON value blob stored per firm."""

from __future__ import annotations

import logging
import secrets
import sqlite3
import string
import time
from dataclasses import dataclass

from database import db_connect, deserialize_json, serialize_json, utcnow_iso

logger = logging.getLogger(__name__)

COLUMN_TYPES = ('boolean', 'string')
MAX_COLUMN_NAME_LENGTH = 120
MAX_STRING_VALUE_LENGTH = 2000

_TRUE_STRINGS = {'true', 'yes', '1', 'y'}
_FALSE_STRINGS = {'false', 'no', '0', 'n', ''}
_KEY_ALPHABET = string.ascii_lowercase + string.digits


class CustomColumnError(ValueError):
    status_code = 400


class CustomColumnNotFound(CustomColumnError):
    status_code = 404


@dataclass(frozen=True)
class SystemColumn:
    """A real ``law_firms`` column that is managed like a custom column."""

    key: str
    name: str
    column_type: str


SYSTEM_COLUMNS = (SystemColumn('top_4', 'Top 4', 'boolean'),)
SYSTEM_COLUMN_KEYS = {column.key for column in SYSTEM_COLUMNS}


def generate_column_key():
    suffix = ''.join(secrets.choice(_KEY_ALPHABET) for _ in range(9))
    return f'custom_{int(time.time() * 1000)}_{suffix}'


def _is_system_match(row, system):
    name = (row['column_name'] or '').strip().lower()
    return row['column_key'] == system.key or name == system.name.lower()


def ensure_system_columns(workspace_id):
    """Leave exactly one row per system column in the workspace.

    A row keyed correctly wins; otherwise the first name match is re-keyed.
    Every other match is deleted, and a missing column is created.
    """
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        'SELECT * FROM law_firm_custom_columns WHERE workspace_id = ? ORDER BY display_order, id',
        (workspace_id,),
    )
    rows = c.fetchall()

    try:
        _repair_system_columns(c, workspace_id, rows)
        conn.commit()
    except sqlite3.IntegrityError:
        # A concurrent request created or re-keyed the same column first
        conn.rollback()
        logger.info('System columns for workspace %s were repaired concurrently', workspace_id)
    finally:
        conn.close()


def _repair_system_columns(c, workspace_id, rows):
    now = utcnow_iso()
    for system in SYSTEM_COLUMNS:
        matches = [row for row in rows if _is_system_match(row, system)]
        if not matches:
            c.execute('SELECT COALESCE(MAX(display_order), -1) + 1 FROM law_firm_custom_columns WHERE workspace_id = ?', (workspace_id,))
            display_order = c.fetchone()[0]
            c.execute(
                '''
                INSERT INTO law_firm_custom_columns (
                    workspace_id, column_key, column_name, column_type, display_order,
                    is_required, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, 0, ?, ?)
                ''',
                (workspace_id, system.key, system.name, system.column_type, display_order, now, now),
            )
            continue

        keeper = next((row for row in matches if row['column_key'] == system.key), matches[0])
        duplicates = [row['id'] for row in matches if row['id'] != keeper['id']]
        if duplicates:
            logger.info(
                'Removing %s duplicate %s column(s) in workspace %s',
                len(duplicates),
                system.key,
                workspace_id,
            )
            c.executemany('DELETE FROM law_firm_custom_columns WHERE id = ?', [(d,) for d in duplicates])
        if (keeper['column_key'], keeper['column_name'], keeper['column_type']) != (system.key, system.name, system.column_type):
            c.execute(
                '''
                UPDATE law_firm_custom_columns
                SET column_key = ?, column_name = ?, column_type = ?, updated_at = ?
                WHERE id = ?
                ''',
                (system.key, system.name, system.column_type, now, keeper['id']),
            )


def _system_columns_in_order(rows):
    for system in SYSTEM_COLUMNS:
        matches = [row for row in rows if _is_system_match(row, system)]
        if len(matches) != 1:
            return False
        row = matches[0]
        if (row['column_key'], row['column_name'], row['column_type']) != (system.key, system.name, system.column_type):
            return False
    return True


def _fetch_columns(workspace_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        'SELECT * FROM law_firm_custom_columns WHERE workspace_id = ? ORDER BY display_order, id',
        (workspace_id,),
    )
    rows = c.fetchall()
    conn.close()
    return rows


def list_columns(workspace_id):
    """Columns in display order; repairs system columns only when they are off."""
    rows = _fetch_columns(workspace_id)
    if not _system_columns_in_order(rows):
        ensure_system_columns(workspace_id)
        rows = _fetch_columns(workspace_id)
    return [_column_out(row) for row in rows]


def _column_out(row):
    column = dict(row)
    column['is_required'] = bool(column['is_required'])
    column['is_system'] = column['column_key'] in SYSTEM_COLUMN_KEYS
    return column


def get_column(column_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT * FROM law_firm_custom_columns WHERE id = ?', (column_id,))
    row = c.fetchone()
    conn.close()
    if row is None:
        raise CustomColumnNotFound('Column not found')
    return _column_out(row)


def _clean_name(name):
    name = (name or '').strip()
    if not name:
        raise CustomColumnError('Column name is required')
    if len(name) > MAX_COLUMN_NAME_LENGTH:
        raise CustomColumnError(f'Column name must be at most {MAX_COLUMN_NAME_LENGTH} characters')
    return name


def _reject_builtin_name(name):
    if name.lower() in {system.name.lower() for system in SYSTEM_COLUMNS}:
        raise CustomColumnError(f'"{name}" is a built-in column')


def create_column(workspace_id, name, column_type='string', display_order=None, is_required=False):
    name = _clean_name(name)
    if column_type not in COLUMN_TYPES:
        raise CustomColumnError("Column type must be 'boolean' or 'string'")
    _reject_builtin_name(name)

    if display_order is not None:
        try:
            display_order = int(display_order)
        except (TypeError, ValueError):
            raise CustomColumnError('display_order must be an integer') from None

    conn = db_connect()
    c = conn.cursor()
    if display_order is None:
        c.execute('SELECT COALESCE(MAX(display_order), -1) + 1 FROM law_firm_custom_columns WHERE workspace_id = ?', (workspace_id,))
        display_order = c.fetchone()[0]
    now = utcnow_iso()
    c.execute(
        '''
        INSERT INTO law_firm_custom_columns (
            workspace_id, column_key, column_name, column_type, display_order,
            is_required, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ''',
        (workspace_id, generate_column_key(), name, column_type, display_order, int(bool(is_required)), now, now),
    )
    column_id = c.lastrowid
    conn.commit()
    conn.close()
    return get_column(column_id)


def update_column(column_id, updates):
    column = get_column(column_id)
    changes = {}
    if 'column_name' in updates:
        changes['column_name'] = _clean_name(updates['column_name'])
    if 'column_type' in updates:
        if updates['column_type'] not in COLUMN_TYPES:
            raise CustomColumnError("Column type must be 'boolean' or 'string'")
        changes['column_type'] = updates['column_type']
    if 'display_order' in updates:
        try:
            changes['display_order'] = int(updates['display_order'])
        except (TypeError, ValueError):
            raise CustomColumnError('display_order must be an integer') from None
    if 'is_required' in updates:
        changes['is_required'] = int(bool(updates['is_required']))

    if column['is_system'] and any(k in changes for k in ('column_name', 'column_type')):
        raise CustomColumnError('Built-in columns cannot be renamed or retyped')
    if 'column_name' in changes:
        _reject_builtin_name(changes['column_name'])
    if not changes:
        return column

    assignments = ', '.join(f'{key} = ?' for key in changes)
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        f'UPDATE law_firm_custom_columns SET {assignments}, updated_at = ? WHERE id = ?',
        (*changes.values(), utcnow_iso(), column_id),
    )
    conn.commit()
    conn.close()
    return get_column(column_id)


def delete_column(column_id):
    """Delete a column and strip its key from every firm's values."""
    column = get_column(column_id)
    if column['is_system']:
        raise CustomColumnError('Built-in columns cannot be deleted')

    key = column['column_key']
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        'SELECT id, custom_values FROM law_firm_custom_values WHERE workspace_id = ?',
        (column['workspace_id'],),
    )
    now = utcnow_iso()
    for row in c.fetchall():
        values = deserialize_json(row['custom_values'], {})
        if key in values:
            values.pop(key)
            c.execute(
                'UPDATE law_firm_custom_values SET custom_values = ?, updated_at = ? WHERE id = ?',
                (serialize_json(values), now, row['id']),
            )
    c.execute('DELETE FROM law_firm_custom_columns WHERE id = ?', (column_id,))
    conn.commit()
    conn.close()
    return column


def reorder_columns(workspace_id, orders):
    """Apply ``[{id, display_order}, ...]`` to columns of one workspace."""
    pairs = []
    for item in orders or []:
        try:
            pairs.append((int(item['display_order']), int(item['id'])))
        except (KeyError, TypeError, ValueError):
            raise CustomColumnError('Each entry needs an id and a display_order') from None

    conn = db_connect()
    c = conn.cursor()
    now = utcnow_iso()
    for display_order, column_id in pairs:
        c.execute(
            '''
            UPDATE law_firm_custom_columns
            SET display_order = ?, updated_at = ?
            WHERE id = ? AND workspace_id = ?
            ''',
            (display_order, now, column_id, workspace_id),
        )
    conn.commit()
    conn.close()
    return list_columns(workspace_id)


# ===== VALUES =====

def coerce_value(column_type, value):
    if column_type == 'boolean':
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)) and value in (0, 1):
            return bool(value)
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
        raise CustomColumnError(f'Expected a true/false value, got {value!r}')
    if value is None:
        return ''
    text = str(value).strip()
    if len(text) > MAX_STRING_VALUE_LENGTH:
        raise CustomColumnError(f'Value must be at most {MAX_STRING_VALUE_LENGTH} characters')
    return text


def get_values(law_firm_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT custom_values FROM law_firm_custom_values WHERE law_firm_id = ?', (law_firm_id,))
    row = c.fetchone()
    conn.close()
    if row is None:
        return {}
    return deserialize_json(row['custom_values'], {})


def get_values_for_workspace(workspace_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        'SELECT law_firm_id, custom_values FROM law_firm_custom_values WHERE workspace_id = ?',
        (workspace_id,),
    )
    values = {row['law_firm_id']: deserialize_json(row['custom_values'], {}) for row in c.fetchall()}
    conn.close()
    return values


def set_values(law_firm_id, workspace_id, values):
    """Merge ``values`` into the firm's blob after type coercion.

    Keys must name a column of the workspace. System keys are written
    through to the matching ``law_firms`` column instead of the blob.
    """
    if not isinstance(values, dict):
        raise CustomColumnError('Values must be an object keyed by column key')

    columns = {column['column_key']: column for column in list_columns(workspace_id)}
    unknown = sorted(set(values) - set(columns))
    if unknown:
        raise CustomColumnError(f"Unknown column(s): {', '.join(unknown)}")

    cleaned = {key: coerce_value(columns[key]['column_type'], value) for key, value in values.items()}
    system_values = {key: cleaned.pop(key) for key in list(cleaned) if key in SYSTEM_COLUMN_KEYS}

    conn = db_connect()
    c = conn.cursor()
    now = utcnow_iso()
    for key, value in system_values.items():
        c.execute(
            f'UPDATE law_firms SET {key} = ?, updated_at = ? WHERE id = ?',
            (int(value) if isinstance(value, bool) else value, now, law_firm_id),
        )

    c.execute('SELECT id, custom_values FROM law_firm_custom_values WHERE law_firm_id = ?', (law_firm_id,))
    row = c.fetchone()
    if row is None:
        c.execute(
            '''
            INSERT INTO law_firm_custom_values (law_firm_id, workspace_id, custom_values, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ''',
            (law_firm_id, workspace_id, serialize_json(cleaned), now, now),
        )
        merged = cleaned
    else:
        merged = deserialize_json(row['custom_values'], {})
        merged.update(cleaned)
        c.execute(
            'UPDATE law_firm_custom_values SET custom_values = ?, updated_at = ? WHERE id = ?',
            (serialize_json(merged), now, row['id']),
        )
    conn.commit()
    conn.close()
    return merged

