"""
SQLite persistence for the Journey Research service.

Every caller opens a short-lived connection with ``db_connect()`` and closes
it when done. JSON columns are stored as TEXT and go through
``serialize_json`` / ``deserialize_json``.
"""

import json
import sqlite3
from datetime import datetime, timezone

from flask import current_app


def db_connect():
    conn = sqlite3.connect(current_app.config['DATABASE_PATH'])
    conn.row_factory = sqlite3.Row
    conn.execute('PRAGMA foreign_keys = ON')
    return conn


def utcnow_iso():
    return datetime.now(timezone.utc).isoformat()


def serialize_json(data):
    return json.dumps(data, ensure_ascii=False)


def deserialize_json(data, fallback):
    if not data:
        return fallback
    try:
        return json.loads(data)
    except (TypeError, json.JSONDecodeError):
        return fallback


def row_to_dict(row):
    return dict(row) if row is not None else None


def next_short_id(cursor, table, scope_column, scope_id):
    """Return the next per-scope sequence number for ``table``."""
    cursor.execute(
        f'SELECT COALESCE(MAX(short_id), 0) + 1 FROM {table} WHERE {scope_column} = ?',
        (scope_id,),
    )
    return cursor.fetchone()[0]


# ===== DATABASE INITIALIZATION =====

def init_db():
    """Create every table and index the service needs. Safe to run repeatedly."""
    conn = db_connect()
    c = conn.cursor()

    c.execute('''
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            full_name TEXT,
            created_at TEXT NOT NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS workspaces (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            created_by INTEGER,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (created_by) REFERENCES users(id) ON DELETE SET NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS workspace_users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            workspace_id INTEGER NOT NULL,
            user_id INTEGER,
            user_email TEXT NOT NULL,
            role TEXT NOT NULL DEFAULT 'member',
            invited_by INTEGER,
            status TEXT NOT NULL DEFAULT 'pending',
            full_name TEXT,
            team TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (workspace_id, user_email),
            FOREIGN KEY (workspace_id) REFERENCES workspaces(id) ON DELETE CASCADE,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE SET NULL,
            FOREIGN KEY (invited_by) REFERENCES users(id) ON DELETE SET NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS projects (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            workspace_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            overview TEXT,
            short_id INTEGER,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (workspace_id) REFERENCES workspaces(id) ON DELETE CASCADE
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS law_firms (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            workspace_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            structure TEXT NOT NULL DEFAULT 'decentralised',
            status TEXT NOT NULL DEFAULT 'active',
            top_4 INTEGER NOT NULL DEFAULT 0,
            quick_facts TEXT,
            key_quotes TEXT,
            insights TEXT,
            opportunities TEXT,
            short_id INTEGER,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (workspace_id) REFERENCES workspaces(id) ON DELETE CASCADE
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS law_firm_custom_columns (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            workspace_id INTEGER NOT NULL,
            column_key TEXT NOT NULL,
            column_name TEXT NOT NULL,
            column_type TEXT NOT NULL DEFAULT 'string',
            display_order INTEGER NOT NULL DEFAULT 0,
            is_required INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (workspace_id, column_key),
            FOREIGN KEY (workspace_id) REFERENCES workspaces(id) ON DELETE CASCADE
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS law_firm_custom_values (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            law_firm_id INTEGER NOT NULL UNIQUE,
            workspace_id INTEGER NOT NULL,
            custom_values TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (law_firm_id) REFERENCES law_firms(id) ON DELETE CASCADE,
            FOREIGN KEY (workspace_id) REFERENCES workspaces(id) ON DELETE CASCADE
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS user_roles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            workspace_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            colour TEXT,
            icon TEXT,
            internal INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (workspace_id) REFERENCES workspaces(id) ON DELETE CASCADE
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS stakeholders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            workspace_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            user_role_id INTEGER,
            law_firm_id INTEGER,
            visitor_id TEXT,
            department TEXT,
            pendo_role TEXT,
            notes TEXT,
            short_id INTEGER,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (workspace_id) REFERENCES workspaces(id) ON DELETE CASCADE,
            FOREIGN KEY (user_role_id) REFERENCES user_roles(id) ON DELETE SET NULL,
            FOREIGN KEY (law_firm_id) REFERENCES law_firms(id) ON DELETE SET NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS research_notes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            project_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            summary TEXT,
            native_notes TEXT,
            note_date TEXT,
            short_id INTEGER,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS research_note_stakeholders (
            research_note_id INTEGER NOT NULL,
            stakeholder_id INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            PRIMARY KEY (research_note_id, stakeholder_id),
            FOREIGN KEY (research_note_id) REFERENCES research_notes(id) ON DELETE CASCADE,
            FOREIGN KEY (stakeholder_id) REFERENCES stakeholders(id) ON DELETE CASCADE
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS examples (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            project_id INTEGER NOT NULL,
            short_id INTEGER,
            actor TEXT NOT NULL,
            goal TEXT NOT NULL,
            entry_point TEXT NOT NULL,
            actions TEXT NOT NULL,
            error TEXT NOT NULL,
            outcome TEXT NOT NULL,
            import_source TEXT NOT NULL DEFAULT 'manual',
            created_by INTEGER,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE,
            FOREIGN KEY (created_by) REFERENCES users(id) ON DELETE SET NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS example_user_roles (
            example_id INTEGER NOT NULL,
            user_role_id INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            PRIMARY KEY (example_id, user_role_id),
            FOREIGN KEY (example_id) REFERENCES examples(id) ON DELETE CASCADE,
            FOREIGN KEY (user_role_id) REFERENCES user_roles(id) ON DELETE CASCADE
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS user_journeys (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            project_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            description TEXT,
            flow_data TEXT NOT NULL,
            short_id INTEGER,
            source_job_id TEXT,
            created_by INTEGER,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE,
            FOREIGN KEY (created_by) REFERENCES users(id) ON DELETE SET NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS ai_processing_jobs (
            id TEXT PRIMARY KEY,
            user_id INTEGER,
            job_type TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'processing',
            input_data TEXT,
            result_data TEXT,
            error_message TEXT,
            metadata TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            completed_at TEXT,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE SET NULL
        )
    ''')

    # Performance indexes
    c.execute('CREATE INDEX IF NOT EXISTS idx_users_email ON users(email)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_workspace_users_email ON workspace_users(user_email)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_projects_workspace ON projects(workspace_id)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_law_firms_workspace ON law_firms(workspace_id)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_custom_columns_workspace ON law_firm_custom_columns(workspace_id)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_custom_values_workspace ON law_firm_custom_values(workspace_id)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_user_roles_workspace ON user_roles(workspace_id)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_stakeholders_workspace ON stakeholders(workspace_id)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_research_notes_project ON research_notes(project_id)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_examples_project ON examples(project_id, created_at)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_user_journeys_project ON user_journeys(project_id, created_at)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_jobs_user ON ai_processing_jobs(user_id, created_at)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_jobs_status ON ai_processing_jobs(status, created_at)')

    conn.commit()
    conn.close()
