"""
Journey Research - Flask Application
JSON API for workspaces, law firms, stakeholders, research notes and examples,
plus the AI import pipelines that turn transcripts and diagrams into journeys
"""

import os
import csv
import hmac
import re
import sqlite3
from io import StringIO, BytesIO
from datetime import datetime, timedelta, timezone
from time import perf_counter
import logging
from logging.handlers import RotatingFileHandler

from flask import Flask, request, jsonify, send_file
from flask_login import (
    LoginManager,
    UserMixin,
    login_user,
    logout_user,
    login_required,
    current_user,
)
from flask_wtf.csrf import CSRFProtect, CSRFError, generate_csrf
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.security import generate_password_hash, check_password_hash
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
import bleach
import sentry_sdk
from sentry_sdk.integrations.flask import FlaskIntegration
from email.utils import parseaddr

from config import Config
from database import db_connect, init_db, next_short_id, row_to_dict, utcnow_iso
from pdf_generator import generate_examples_pdf
from services import ai_service, custom_columns, example_service, job_service, journey_service
from services.email_service import init_mail, send_workspace_invite_email
from services.prompts import build_diagram_prompt, build_transcript_prompt

# Initialize Flask app
app = Flask(__name__)
app.config.from_object(Config)

# Initialize CSRF protection
csrf = CSRFProtect(app)

# Initialize basic rate limiting
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=app.config.get('RATELIMIT_STORAGE_URI', 'memory://'),
    strategy='fixed-window',
    default_limits=["2000 per day", "300 per hour"],
)
limiter.init_app(app)


@limiter.request_filter
def _rate_limit_exempt_for_tests():
    return app.config.get('TESTING', False)


# Initialize email service
init_mail(app)

os.makedirs(app.config.get('LOG_DIR', 'logs'), exist_ok=True)
_file_handler = RotatingFileHandler(
    os.path.join(app.config.get('LOG_DIR', 'logs'), 'app.log'),
    maxBytes=5 * 1024 * 1024,
    backupCount=5,
)
_file_handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s'))
app.logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))
if not any(isinstance(h, RotatingFileHandler) for h in app.logger.handlers):
    app.logger.addHandler(_file_handler)

# Service modules log through their own module loggers; send them to the same file
_services_logger = logging.getLogger('services')
_services_logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))
if not any(isinstance(h, RotatingFileHandler) for h in _services_logger.handlers):
    _services_logger.addHandler(_file_handler)

if app.config.get('SENTRY_DSN'):
    sentry_sdk.init(
        dsn=app.config.get('SENTRY_DSN'),
        integrations=[FlaskIntegration()],
        traces_sample_rate=app.config.get('SENTRY_TRACES_SAMPLE_RATE', 0.1),
    )

MAX_CSV_ROWS = 5000
MAX_NAME_LENGTH = 255
MAX_TEXT_LENGTH = 20000
MAX_TRANSCRIPT_LENGTH = 200000
EMAIL_REGEX = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

INVITABLE_ROLES = ('admin', 'member')
TEAMS = ('Design', 'Product', 'Engineering', 'Other')
MANAGER_ROLES = ('owner', 'admin')
LAW_FIRM_STRUCTURES = ('centralised', 'decentralised')
LAW_FIRM_STATUSES = ('active', 'inactive')

JOB_ROUTE_TYPES = {
    'transcript': 'transcript',
    'diagram': 'diagram',
    'edit-journey': 'edit_journey',
}

REQUEST_METRICS = {
    'requests_total': 0,
    'errors_total': 0,
    'latency_ms_total': 0.0,
}


class ApiError(Exception):
    """Raised from route helpers; rendered as ``{"error": message}``."""

    def __init__(self, message, status_code=400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@app.before_request
def _metrics_before_request():
    request._start_ts = perf_counter()


@app.after_request
def _metrics_after_request(response):
    started = getattr(request, '_start_ts', None)
    if started is not None:
        REQUEST_METRICS['requests_total'] += 1
        elapsed = (perf_counter() - started) * 1000.0
        REQUEST_METRICS['latency_ms_total'] += elapsed
        if response.status_code >= 400:
            REQUEST_METRICS['errors_total'] += 1
    return response


@app.after_request
def _apply_cors_headers(response):
    origin = request.headers.get('Origin')
    allowed = app.config.get('CORS_ALLOWED_ORIGINS') or []
    if origin and (origin in allowed or '*' in allowed):
        response.headers['Access-Control-Allow-Origin'] = origin
        response.headers['Access-Control-Allow-Credentials'] = 'true'
        response.headers['Access-Control-Allow-Headers'] = 'Content-Type, X-CSRFToken'
        response.headers['Access-Control-Allow-Methods'] = 'GET, POST, PUT, PATCH, DELETE, OPTIONS'
        response.headers.add('Vary', 'Origin')
    return response


def is_valid_email(email):
    if not email:
        return False
    _, parsed = parseaddr(email)
    return bool(parsed and EMAIL_REGEX.match(parsed) and len(parsed) <= 254)


def validate_password_strength(password):
    if not password or len(password) < 8:
        return False, 'Password must be at least 8 characters long.'
    if not re.search(r'[A-Z]', password):
        return False, 'Password must include at least one uppercase letter.'
    if not re.search(r'[a-z]', password):
        return False, 'Password must include at least one lowercase letter.'
    if not re.search(r'\d', password):
        return False, 'Password must include at least one number.'
    return True, ''


# ===== REQUEST HELPERS =====

def json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def clean_text(value, max_length=MAX_TEXT_LENGTH, field='Value'):
    if value is None:
        return None
    text = bleach.clean(str(value), strip=True).strip()
    if len(text) > max_length:
        raise ApiError(f'{field} must be at most {max_length} characters')
    return text


def require_name(value, field='Name'):
    name = clean_text(value, MAX_NAME_LENGTH, field)
    if not name:
        raise ApiError(f'{field} is required')
    return name


def parse_bool(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'y')
    return bool(value)


def missing_fields_error(fields):
    return ApiError(f"Missing required fields: {', '.join(fields)}")


def read_csv_upload():
    """Return a DictReader over the uploaded ``file`` field."""
    if 'file' not in request.files:
        raise ApiError('No CSV file was detected in the upload request.')
    upload = request.files['file']
    if upload.filename == '':
        raise ApiError('No file selected.')
    if not upload.filename.lower().endswith('.csv'):
        raise ApiError('Unsupported file type. Please upload a .csv file.')
    try:
        content = upload.read().decode('utf-8-sig')
    except UnicodeDecodeError:
        raise ApiError('CSV must be UTF-8 encoded.') from None
    reader = csv.DictReader(StringIO(content))
    if not reader.fieldnames:
        raise ApiError('CSV is empty.')
    reader.fieldnames = [name.strip() for name in reader.fieldnames]
    return reader


def csv_response(filename, header, rows):
    csv_buffer = StringIO()
    writer = csv.writer(csv_buffer)
    writer.writerow(header)
    for row in rows:
        writer.writerow(row)
    out = BytesIO(csv_buffer.getvalue().encode('utf-8'))
    out.seek(0)
    return send_file(out, as_attachment=True, download_name=filename, mimetype='text/csv')


# ===== USER CLASS FOR FLASK-LOGIN =====

class User(UserMixin):
    def __init__(self, id, email, full_name=None, created_at=None):
        self.id = id
        self.email = email
        self.full_name = full_name
        self.created_at = created_at

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'full_name': self.full_name,
            'created_at': self.created_at,
        }


# Initialize Flask-Login
login_manager = LoginManager()


@login_manager.user_loader
def load_user(user_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT id, email, full_name, created_at FROM users WHERE id = ?', (user_id,))
    user_data = c.fetchone()
    conn.close()

    if user_data:
        return User(
            id=user_data['id'],
            email=user_data['email'],
            full_name=user_data['full_name'],
            created_at=user_data['created_at'],
        )
    return None


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'error': 'Authentication required'}), 401


login_manager.init_app(app)


def activate_pending_invitations(user_id, email):
    """Attach pending memberships for ``email`` to the signed-in user."""
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        UPDATE workspace_users
        SET user_id = ?, status = 'active', updated_at = ?
        WHERE user_email = ? AND status = 'pending'
        ''',
        (user_id, utcnow_iso(), email),
    )
    activated = c.rowcount
    conn.commit()
    conn.close()
    if activated:
        app.logger.info('Activated %s pending invitation(s) for user %s', activated, user_id)
    return activated


# ===== AUTHORIZATION HELPERS =====

def get_membership(workspace_id, email):
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        SELECT * FROM workspace_users
        WHERE workspace_id = ? AND user_email = ? AND status = 'active'
        ''',
        (workspace_id, email),
    )
    row = row_to_dict(c.fetchone())
    conn.close()
    return row


def require_workspace_member(workspace_id, roles=None):
    """Return the current user's active membership or raise 404/403."""
    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT id FROM workspaces WHERE id = ?', (workspace_id,))
    exists = c.fetchone()
    conn.close()
    if not exists:
        raise ApiError('Workspace not found', 404)

    membership = get_membership(workspace_id, current_user.email)
    if not membership:
        raise ApiError('User does not have access to this workspace', 403)
    if roles and membership['role'] not in roles:
        raise ApiError('Only workspace owners and admins can do that', 403)
    return membership


def load_workspace_row(table, row_id, label, roles=None):
    """Fetch a workspace-scoped row after checking membership of its workspace."""
    conn = db_connect()
    c = conn.cursor()
    c.execute(f'SELECT * FROM {table} WHERE id = ?', (row_id,))
    row = row_to_dict(c.fetchone())
    conn.close()
    if not row:
        raise ApiError(f'{label} not found', 404)
    require_workspace_member(row['workspace_id'], roles)
    return row


def load_project(project_id, roles=None):
    return load_workspace_row('projects', project_id, 'Project', roles)


def load_example(example_id):
    example = example_service.get_example(example_id)
    if not example:
        raise ApiError('Example not found', 404)
    project = load_project(example['project_id'])
    return example, project


def load_research_note(note_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT * FROM research_notes WHERE id = ?', (note_id,))
    note = row_to_dict(c.fetchone())
    conn.close()
    if not note:
        raise ApiError('Research note not found', 404)
    project = load_project(note['project_id'])
    return note, project


def workspace_role_names(workspace_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT name FROM user_roles WHERE workspace_id = ? ORDER BY name', (workspace_id,))
    names = [row['name'] for row in c.fetchall()]
    conn.close()
    return names


def _update_row(table, row_id, changes):
    if not changes:
        return
    assignments = ', '.join(f'{key} = ?' for key in changes)
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        f'UPDATE {table} SET {assignments}, updated_at = ? WHERE id = ?',
        (*changes.values(), utcnow_iso(), row_id),
    )
    conn.commit()
    conn.close()


def _fetch_row(table, row_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute(f'SELECT * FROM {table} WHERE id = ?', (row_id,))
    row = row_to_dict(c.fetchone())
    conn.close()
    return row


def _delete_row(table, row_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute(f'DELETE FROM {table} WHERE id = ?', (row_id,))
    conn.commit()
    conn.close()


# ===== AUTH ROUTES =====


@app.route('/api/csrf-token')
def csrf_token():
    return jsonify({'csrfToken': generate_csrf()})


@app.route('/api/auth/register', methods=['POST'])
@limiter.limit('5 per hour')
def register():
    """Self-service sign up. Pending workspace invitations are activated."""
    data = json_body()
    errors = {}
    full_name = (data.get('full_name') or '').strip()
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''

    if not is_valid_email(email):
        errors['email'] = 'Enter a valid email address.'
    if len(full_name) < 2 or len(full_name) > 120:
        errors['full_name'] = 'Enter your full name (2-120 characters).'
    ok_password, password_msg = validate_password_strength(password)
    if not ok_password:
        errors['password'] = password_msg
    if errors:
        return jsonify({'error': 'Please correct the highlighted fields.', 'fields': errors}), 400

    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT id FROM users WHERE email = ?', (email,))
    if c.fetchone():
        conn.close()
        return jsonify({'error': 'An account with that email already exists. Please log in.'}), 409

    created_at = utcnow_iso()
    c.execute(
        'INSERT INTO users (email, password_hash, full_name, created_at) VALUES (?, ?, ?, ?)',
        (email, generate_password_hash(password), bleach.clean(full_name, strip=True), created_at),
    )
    user_id = c.lastrowid
    conn.commit()
    conn.close()

    user = load_user(user_id)
    login_user(user)
    activate_pending_invitations(user_id, email)
    app.logger.info('Registered user %s', user_id)
    return jsonify({'user': user.to_dict()}), 201


@app.route('/api/auth/login', methods=['POST'])
@limiter.limit('5 per 15 minutes')
def login():
    data = json_body()
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''
    if not email or not password:
        return jsonify({'error': 'Email and password are required to sign in.'}), 400

    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT id, password_hash FROM users WHERE email = ?', (email,))
    user_data = c.fetchone()
    conn.close()

    if user_data and check_password_hash(user_data['password_hash'], password):
        user = load_user(user_data['id'])
        login_user(user)
        activate_pending_invitations(user.id, user.email)
        return jsonify({'user': user.to_dict()})

    return jsonify({'error': 'Sign-in failed. Check your email and password and try again.'}), 401


@app.route('/api/auth/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({'success': True})


@app.route('/api/auth/me')
@login_required
def me():
    return jsonify({'user': current_user.to_dict(), 'workspaces': _list_user_workspaces()})


# ===== WORKSPACES =====


def _list_user_workspaces():
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        SELECT w.*, wu.role AS role
        FROM workspaces w
        INNER JOIN workspace_users wu ON wu.workspace_id = w.id
        WHERE wu.user_email = ? AND wu.status = 'active'
        ORDER BY w.name
        ''',
        (current_user.email,),
    )
    rows = [dict(row) for row in c.fetchall()]
    conn.close()
    return rows


@app.route('/api/workspaces', methods=['GET', 'POST'])
@login_required
def workspaces():
    if request.method == 'GET':
        return jsonify({'workspaces': _list_user_workspaces()})

    name = require_name(json_body().get('name'), 'Workspace name')
    now = utcnow_iso()
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        'INSERT INTO workspaces (name, created_by, created_at, updated_at) VALUES (?, ?, ?, ?)',
        (name, current_user.id, now, now),
    )
    workspace_id = c.lastrowid
    c.execute(
        '''
        INSERT INTO workspace_users (
            workspace_id, user_id, user_email, role, status, full_name, created_at, updated_at
        )
        VALUES (?, ?, ?, 'owner', 'active', ?, ?, ?)
        ''',
        (workspace_id, current_user.id, current_user.email, current_user.full_name, now, now),
    )
    conn.commit()
    conn.close()
    custom_columns.ensure_system_columns(workspace_id)
    app.logger.info('User %s created workspace %s', current_user.id, workspace_id)
    return jsonify({'workspace': _fetch_row('workspaces', workspace_id)}), 201


@app.route('/api/workspaces/<int:workspace_id>', methods=['PATCH', 'DELETE'])
@login_required
def workspace_detail(workspace_id):
    if request.method == 'DELETE':
        require_workspace_member(workspace_id, roles=('owner',))
        _delete_row('workspaces', workspace_id)
        return jsonify({'success': True})

    require_workspace_member(workspace_id, roles=MANAGER_ROLES)
    _update_row('workspaces', workspace_id, {'name': require_name(json_body().get('name'), 'Workspace name')})
    return jsonify({'workspace': _fetch_row('workspaces', workspace_id)})


def _law_firms_with_values(workspace_id, filters=None):
    filters = filters or {}
    clauses = ['workspace_id = ?']
    params = [workspace_id]
    if filters.get('status'):
        clauses.append('status = ?')
        params.append(filters['status'])
    if filters.get('structure'):
        clauses.append('structure = ?')
        params.append(filters['structure'])
    if filters.get('top_4') is not None:
        clauses.append('top_4 = ?')
        params.append(int(filters['top_4']))
    if filters.get('q'):
        clauses.append('name LIKE ? COLLATE NOCASE')
        params.append(f"%{filters['q']}%")

    conn = db_connect()
    c = conn.cursor()
    c.execute(
        f"SELECT * FROM law_firms WHERE {' AND '.join(clauses)} ORDER BY name COLLATE NOCASE",
        params,
    )
    firms = [dict(row) for row in c.fetchall()]
    conn.close()

    values = custom_columns.get_values_for_workspace(workspace_id)
    for firm in firms:
        firm['top_4'] = bool(firm['top_4'])
        firm['custom_values'] = values.get(firm['id'], {})
    return firms


def _rows_for_workspace(table, workspace_id, order_by='name COLLATE NOCASE'):
    conn = db_connect()
    c = conn.cursor()
    c.execute(f'SELECT * FROM {table} WHERE workspace_id = ? ORDER BY {order_by}', (workspace_id,))
    rows = [dict(row) for row in c.fetchall()]
    conn.close()
    return rows


@app.route('/api/workspaces/<int:workspace_id>/data')
@login_required
def workspace_data(workspace_id):
    """Everything the client needs to render a workspace in one call."""
    require_workspace_member(workspace_id)

    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        SELECT rn.* FROM research_notes rn
        INNER JOIN projects p ON p.id = rn.project_id
        WHERE p.workspace_id = ?
        ORDER BY rn.created_at DESC
        ''',
        (workspace_id,),
    )
    notes = [dict(row) for row in c.fetchall()]
    c.execute(
        '''
        SELECT e.* FROM examples e
        INNER JOIN projects p ON p.id = e.project_id
        WHERE p.workspace_id = ?
        ORDER BY e.created_at DESC
        ''',
        (workspace_id,),
    )
    examples = [dict(row) for row in c.fetchall()]
    c.execute(
        '''
        SELECT uj.id, uj.project_id, uj.name, uj.description, uj.short_id, uj.created_at, uj.updated_at
        FROM user_journeys uj
        INNER JOIN projects p ON p.id = uj.project_id
        WHERE p.workspace_id = ?
        ORDER BY uj.created_at DESC
        ''',
        (workspace_id,),
    )
    journeys = [dict(row) for row in c.fetchall()]
    conn.close()

    return jsonify({
        'workspace': _fetch_row('workspaces', workspace_id),
        'members': _rows_for_workspace('workspace_users', workspace_id, 'created_at'),
        'projects': _rows_for_workspace('projects', workspace_id),
        'lawFirms': _law_firms_with_values(workspace_id),
        'customColumns': custom_columns.list_columns(workspace_id),
        'userRoles': _rows_for_workspace('user_roles', workspace_id),
        'stakeholders': _rows_for_workspace('stakeholders', workspace_id),
        'researchNotes': notes,
        'examples': examples,
        'userJourneys': journeys,
    })


@app.route('/api/workspaces/<int:workspace_id>/members', methods=['GET', 'POST'])
@login_required
def workspace_members(workspace_id):
    if request.method == 'GET':
        require_workspace_member(workspace_id)
        return jsonify({'members': _rows_for_workspace('workspace_users', workspace_id, 'created_at')})

    require_workspace_member(workspace_id, roles=MANAGER_ROLES)
    data = json_body()
    email = (data.get('email') or '').strip().lower()
    role = (data.get('role') or '').strip()
    team = (data.get('team') or '').strip() or None
    full_name = clean_text(data.get('full_name'), 120, 'Full name') or None

    missing = [field for field, value in (('email', email), ('role', role)) if not value]
    if missing:
        raise missing_fields_error(missing)
    if not is_valid_email(email):
        raise ApiError('Invalid email format')
    if role not in INVITABLE_ROLES:
        raise ApiError('Invalid role. Must be admin or member')
    if team and team not in TEAMS:
        raise ApiError(f"Invalid team. Must be one of: {', '.join(TEAMS)}")

    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT id FROM users WHERE email = ?', (email,))
    existing_user = c.fetchone()
    now = utcnow_iso()
    try:
        c.execute(
            '''
            INSERT INTO workspace_users (
                workspace_id, user_id, user_email, role, invited_by, status, full_name, team,
                created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?, ?)
            ''',
            (
                workspace_id,
                existing_user['id'] if existing_user else None,
                email,
                role,
                current_user.id,
                full_name,
                team,
                now,
                now,
            ),
        )
    except sqlite3.IntegrityError:
        conn.close()
        return jsonify({'error': 'User is already a member of this workspace'}), 409
    member_id = c.lastrowid
    c.execute('SELECT name FROM workspaces WHERE id = ?', (workspace_id,))
    workspace_name = c.fetchone()['name']
    conn.commit()
    conn.close()

    email_sent = False
    if app.config.get('MAIL_ENABLED'):
        email_sent = send_workspace_invite_email(
            email,
            workspace_name,
            current_user.full_name or current_user.email,
            role,
            app.config.get('PUBLIC_BASE_URL', ''),
        )
    app.logger.info('User %s invited %s to workspace %s as %s', current_user.id, email, workspace_id, role)
    return jsonify({'member': _fetch_row('workspace_users', member_id), 'emailSent': email_sent}), 201


@app.route('/api/workspaces/<int:workspace_id>/members/<int:member_id>', methods=['DELETE'])
@login_required
def remove_workspace_member(workspace_id, member_id):
    require_workspace_member(workspace_id, roles=MANAGER_ROLES)
    member = _fetch_row('workspace_users', member_id)
    if not member or member['workspace_id'] != workspace_id:
        raise ApiError('Member not found', 404)
    if member['role'] == 'owner':
        raise ApiError('The workspace owner cannot be removed', 403)
    _delete_row('workspace_users', member_id)
    return jsonify({'success': True})


# ===== PROJECTS =====


@app.route('/api/workspaces/<int:workspace_id>/projects', methods=['GET', 'POST'])
@login_required
def projects(workspace_id):
    require_workspace_member(workspace_id)
    if request.method == 'GET':
        return jsonify({'projects': _rows_for_workspace('projects', workspace_id)})

    data = json_body()
    name = require_name(data.get('name'), 'Project name')
    overview = clean_text(data.get('overview'), field='Overview')
    now = utcnow_iso()
    conn = db_connect()
    c = conn.cursor()
    short_id = next_short_id(c, 'projects', 'workspace_id', workspace_id)
    c.execute(
        '''
        INSERT INTO projects (workspace_id, name, overview, short_id, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ''',
        (workspace_id, name, overview, short_id, now, now),
    )
    project_id = c.lastrowid
    conn.commit()
    conn.close()
    return jsonify({'project': _fetch_row('projects', project_id)}), 201


@app.route('/api/projects/<int:project_id>', methods=['GET', 'PATCH', 'DELETE'])
@login_required
def project_detail(project_id):
    project = load_project(project_id)
    if request.method == 'GET':
        return jsonify({'project': project})
    if request.method == 'DELETE':
        _delete_row('projects', project_id)
        return jsonify({'success': True})

    data = json_body()
    changes = {}
    if 'name' in data:
        changes['name'] = require_name(data['name'], 'Project name')
    if 'overview' in data:
        changes['overview'] = clean_text(data['overview'], field='Overview')
    _update_row('projects', project_id, changes)
    return jsonify({'project': _fetch_row('projects', project_id)})


# ===== LAW FIRMS =====


def _law_firm_fields(data, partial=False):
    changes = {}
    if 'name' in data or not partial:
        changes['name'] = require_name(data.get('name'), 'Law firm name')
    if 'structure' in data or not partial:
        structure = data.get('structure') or 'decentralised'
        if structure not in LAW_FIRM_STRUCTURES:
            raise ApiError("Structure must be 'centralised' or 'decentralised'")
        changes['structure'] = structure
    if 'status' in data or not partial:
        status = data.get('status') or 'active'
        if status not in LAW_FIRM_STATUSES:
            raise ApiError("Status must be 'active' or 'inactive'")
        changes['status'] = status
    if 'top_4' in data or not partial:
        changes['top_4'] = int(parse_bool(data.get('top_4', False)))
    for field in ('quick_facts', 'key_quotes', 'insights', 'opportunities'):
        if field in data:
            changes[field] = clean_text(data[field], field=field.replace('_', ' ').capitalize())
    return changes


def _insert_law_firm(c, workspace_id, fields):
    now = utcnow_iso()
    short_id = next_short_id(c, 'law_firms', 'workspace_id', workspace_id)
    columns = ['workspace_id', 'short_id', 'created_at', 'updated_at', *fields]
    c.execute(
        f"INSERT INTO law_firms ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
        (workspace_id, short_id, now, now, *fields.values()),
    )
    return c.lastrowid


def _law_firm_out(firm_id):
    firm = _fetch_row('law_firms', firm_id)
    firm['top_4'] = bool(firm['top_4'])
    firm['custom_values'] = custom_columns.get_values(firm_id)
    return firm


@app.route('/api/workspaces/<int:workspace_id>/law-firms', methods=['GET', 'POST', 'DELETE'])
@login_required
def law_firms(workspace_id):
    if request.method == 'GET':
        require_workspace_member(workspace_id)
        top_4 = request.args.get('top_4')
        filters = {
            'status': request.args.get('status'),
            'structure': request.args.get('structure'),
            'top_4': parse_bool(top_4) if top_4 is not None else None,
            'q': (request.args.get('q') or '').strip(),
        }
        return jsonify({'lawFirms': _law_firms_with_values(workspace_id, filters)})

    if request.method == 'DELETE':
        require_workspace_member(workspace_id, roles=MANAGER_ROLES)
        conn = db_connect()
        c = conn.cursor()
        c.execute('DELETE FROM law_firms WHERE workspace_id = ?', (workspace_id,))
        deleted = c.rowcount
        conn.commit()
        conn.close()
        app.logger.info('User %s deleted %s law firms in workspace %s', current_user.id, deleted, workspace_id)
        return jsonify({'deleted': deleted})

    require_workspace_member(workspace_id)
    data = json_body()
    fields = _law_firm_fields(data)
    conn = db_connect()
    c = conn.cursor()
    firm_id = _insert_law_firm(c, workspace_id, fields)
    conn.commit()
    conn.close()
    if isinstance(data.get('custom_values'), dict) and data['custom_values']:
        custom_columns.set_values(firm_id, workspace_id, data['custom_values'])
    return jsonify({'lawFirm': _law_firm_out(firm_id)}), 201


@app.route('/api/workspaces/<int:workspace_id>/law-firms/import', methods=['POST'])
@login_required
@limiter.limit('15 per hour')
def import_law_firms(workspace_id):
    """CSV import with ``Name`` and ``Structure`` columns."""
    require_workspace_member(workspace_id)
    reader = read_csv_upload()
    headers = {name.lower(): name for name in reader.fieldnames}
    if 'name' not in headers or 'structure' not in headers:
        raise ApiError('CSV must have at least 2 columns: Name, Structure')

    created = 0
    errors = []
    conn = db_connect()
    c = conn.cursor()
    for index, row in enumerate(reader, start=2):
        if index - 1 > MAX_CSV_ROWS:
            conn.close()
            raise ApiError(f'CSV has too many rows. Maximum allowed is {MAX_CSV_ROWS}.')
        name = bleach.clean((row.get(headers['name']) or '').strip(), strip=True)
        if not name:
            errors.append(f'Row {index}: Name is required')
            continue
        structure_value = (row.get(headers['structure']) or '').strip().lower()
        structure = 'centralised' if structure_value == 'centralised' else 'decentralised'
        try:
            _insert_law_firm(c, workspace_id, {'name': name[:MAX_NAME_LENGTH], 'structure': structure})
        except sqlite3.Error as exc:
            errors.append(f'Row {index}: {exc}')
            continue
        created += 1
    conn.commit()
    conn.close()
    app.logger.info('Imported %s law firms into workspace %s (%s errors)', created, workspace_id, len(errors))
    return jsonify({'success': created, 'errors': errors})


@app.route('/api/law-firms/<int:firm_id>', methods=['GET', 'PATCH', 'DELETE'])
@login_required
def law_firm_detail(firm_id):
    firm = load_workspace_row('law_firms', firm_id, 'Law firm')
    if request.method == 'GET':
        return jsonify({'lawFirm': _law_firm_out(firm_id)})
    if request.method == 'DELETE':
        _delete_row('law_firms', firm_id)
        return jsonify({'success': True})

    data = json_body()
    _update_row('law_firms', firm_id, _law_firm_fields(data, partial=True))
    if isinstance(data.get('custom_values'), dict) and data['custom_values']:
        custom_columns.set_values(firm_id, firm['workspace_id'], data['custom_values'])
    return jsonify({'lawFirm': _law_firm_out(firm_id)})


@app.route('/api/law-firms/<int:firm_id>/custom-values', methods=['GET', 'PUT'])
@login_required
def law_firm_custom_values(firm_id):
    firm = load_workspace_row('law_firms', firm_id, 'Law firm')
    if request.method == 'GET':
        values = custom_columns.get_values(firm_id)
        values['top_4'] = bool(firm['top_4'])
        return jsonify({'values': values})

    data = json_body()
    values = data.get('values', data)
    merged = custom_columns.set_values(firm_id, firm['workspace_id'], values)
    return jsonify({'values': merged, 'lawFirm': _law_firm_out(firm_id)})


# ===== LAW FIRM CUSTOM COLUMNS =====


@app.route('/api/workspaces/<int:workspace_id>/law-firm-columns', methods=['GET', 'POST'])
@login_required
def law_firm_columns(workspace_id):
    if request.method == 'GET':
        require_workspace_member(workspace_id)
        return jsonify({'columns': custom_columns.list_columns(workspace_id)})

    require_workspace_member(workspace_id, roles=MANAGER_ROLES)
    data = json_body()
    column = custom_columns.create_column(
        workspace_id,
        clean_text(data.get('column_name'), custom_columns.MAX_COLUMN_NAME_LENGTH, 'Column name'),
        data.get('column_type', 'string'),
        display_order=data.get('display_order'),
        is_required=parse_bool(data.get('is_required', False)),
    )
    return jsonify({'column': column}), 201


@app.route('/api/workspaces/<int:workspace_id>/law-firm-columns/reorder', methods=['POST'])
@login_required
def reorder_law_firm_columns(workspace_id):
    require_workspace_member(workspace_id, roles=MANAGER_ROLES)
    orders = json_body().get('columns')
    if not isinstance(orders, list):
        raise missing_fields_error(['columns'])
    return jsonify({'columns': custom_columns.reorder_columns(workspace_id, orders)})


@app.route('/api/law-firm-columns/<int:column_id>', methods=['PATCH', 'DELETE'])
@login_required
def law_firm_column_detail(column_id):
    column = custom_columns.get_column(column_id)
    require_workspace_member(column['workspace_id'], roles=MANAGER_ROLES)
    if request.method == 'DELETE':
        custom_columns.delete_column(column_id)
        return jsonify({'success': True})

    data = json_body()
    if 'column_name' in data:
        data['column_name'] = clean_text(data['column_name'], custom_columns.MAX_COLUMN_NAME_LENGTH, 'Column name')
    return jsonify({'column': custom_columns.update_column(column_id, data)})


# ===== USER ROLES =====


def _user_role_fields(data, partial=False):
    changes = {}
    if 'name' in data or not partial:
        changes['name'] = require_name(data.get('name'), 'Role name')
    for field in ('colour', 'icon'):
        if field in data or not partial:
            changes[field] = clean_text(data.get(field), 64, field.capitalize())
    if 'internal' in data or not partial:
        changes['internal'] = int(parse_bool(data.get('internal', False)))
    return changes


def _insert_user_role(c, workspace_id, fields):
    now = utcnow_iso()
    columns = ['workspace_id', 'created_at', 'updated_at', *fields]
    c.execute(
        f"INSERT INTO user_roles ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
        (workspace_id, now, now, *fields.values()),
    )
    return c.lastrowid


@app.route('/api/workspaces/<int:workspace_id>/user-roles', methods=['GET', 'POST'])
@login_required
def user_roles(workspace_id):
    require_workspace_member(workspace_id)
    if request.method == 'GET':
        return jsonify({'userRoles': _rows_for_workspace('user_roles', workspace_id)})

    conn = db_connect()
    c = conn.cursor()
    role_id = _insert_user_role(c, workspace_id, _user_role_fields(json_body()))
    conn.commit()
    conn.close()
    return jsonify({'userRole': _fetch_row('user_roles', role_id)}), 201


@app.route('/api/user-roles/<int:role_id>', methods=['PATCH', 'DELETE'])
@login_required
def user_role_detail(role_id):
    load_workspace_row('user_roles', role_id, 'User role')
    if request.method == 'DELETE':
        _delete_row('user_roles', role_id)
        return jsonify({'success': True})
    _update_row('user_roles', role_id, _user_role_fields(json_body(), partial=True))
    return jsonify({'userRole': _fetch_row('user_roles', role_id)})


# ===== STAKEHOLDERS =====


def _check_reference(table, row_id, workspace_id, label):
    if row_id in (None, ''):
        return None
    row = _fetch_row(table, row_id)
    if not row or row['workspace_id'] != workspace_id:
        raise ApiError(f'{label} not found in this workspace')
    return row['id']


def _stakeholder_fields(workspace_id, data, partial=False):
    changes = {}
    if 'name' in data or not partial:
        changes['name'] = require_name(data.get('name'), 'Stakeholder name')
    if 'user_role_id' in data:
        changes['user_role_id'] = _check_reference('user_roles', data['user_role_id'], workspace_id, 'User role')
    if 'law_firm_id' in data:
        changes['law_firm_id'] = _check_reference('law_firms', data['law_firm_id'], workspace_id, 'Law firm')
    for field in ('visitor_id', 'department', 'pendo_role'):
        if field in data:
            changes[field] = clean_text(data[field], MAX_NAME_LENGTH, field.replace('_', ' ').capitalize()) or None
    if 'notes' in data:
        changes['notes'] = clean_text(data['notes'], field='Notes')
    return changes


def _find_stakeholder_by_visitor(c, workspace_id, visitor_id, law_firm_id):
    if not visitor_id:
        return None
    c.execute(
        '''
        SELECT * FROM stakeholders
        WHERE workspace_id = ? AND visitor_id = ? AND law_firm_id IS ?
        ''',
        (workspace_id, visitor_id, law_firm_id),
    )
    return row_to_dict(c.fetchone())


def _insert_stakeholder(c, workspace_id, fields):
    now = utcnow_iso()
    short_id = next_short_id(c, 'stakeholders', 'workspace_id', workspace_id)
    columns = ['workspace_id', 'short_id', 'created_at', 'updated_at', *fields]
    c.execute(
        f"INSERT INTO stakeholders ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
        (workspace_id, short_id, now, now, *fields.values()),
    )
    return c.lastrowid


@app.route('/api/workspaces/<int:workspace_id>/stakeholders', methods=['GET', 'POST'])
@login_required
def stakeholders(workspace_id):
    require_workspace_member(workspace_id)
    if request.method == 'GET':
        return jsonify({'stakeholders': _rows_for_workspace('stakeholders', workspace_id)})

    fields = _stakeholder_fields(workspace_id, json_body())
    conn = db_connect()
    c = conn.cursor()
    existing = _find_stakeholder_by_visitor(c, workspace_id, fields.get('visitor_id'), fields.get('law_firm_id'))
    if existing:
        conn.close()
        return jsonify({'stakeholder': existing, 'existing': True}), 200
    stakeholder_id = _insert_stakeholder(c, workspace_id, fields)
    conn.commit()
    conn.close()
    return jsonify({'stakeholder': _fetch_row('stakeholders', stakeholder_id)}), 201


def _find_or_create(c, table, workspace_id, name, defaults):
    c.execute(
        f'SELECT id FROM {table} WHERE workspace_id = ? AND name = ? LIMIT 1',
        (workspace_id, name),
    )
    row = c.fetchone()
    if row:
        return row['id']
    if table == 'law_firms':
        return _insert_law_firm(c, workspace_id, {'name': name, **defaults})
    return _insert_user_role(c, workspace_id, {'name': name, **defaults})


@app.route('/api/workspaces/<int:workspace_id>/stakeholders/import', methods=['POST'])
@login_required
@limiter.limit('15 per hour')
def import_stakeholders(workspace_id):
    """CSV import: Visitor ID, Name, Department, Pendo Role, Law Firm Name, User Role."""
    require_workspace_member(workspace_id)
    reader = read_csv_upload()
    if 'Name' not in reader.fieldnames:
        raise ApiError('CSV must include a Name column')

    created = 0
    updated = 0
    errors = []
    conn = db_connect()
    c = conn.cursor()
    for index, row in enumerate(reader, start=2):
        if index - 1 > MAX_CSV_ROWS:
            conn.close()
            raise ApiError(f'CSV has too many rows. Maximum allowed is {MAX_CSV_ROWS}.')
        name = bleach.clean((row.get('Name') or '').strip(), strip=True)
        if not name:
            errors.append(f'Row {index}: Name is required')
            continue
        law_firm_name = bleach.clean((row.get('Law Firm Name') or '').strip(), strip=True)
        role_name = bleach.clean((row.get('User Role') or '').strip(), strip=True)
        visitor_id = (row.get('Visitor ID') or '').strip() or None
        try:
            law_firm_id = None
            if law_firm_name:
                law_firm_id = _find_or_create(
                    c, 'law_firms', workspace_id, law_firm_name,
                    {'structure': 'decentralised', 'status': 'active'},
                )
            role_id = None
            if role_name:
                role_id = _find_or_create(
                    c, 'user_roles', workspace_id, role_name,
                    {'colour': '#3B82F6', 'icon': 'Person'},
                )

            existing = _find_stakeholder_by_visitor(c, workspace_id, visitor_id, law_firm_id)
            if existing:
                if role_id and existing['user_role_id'] != role_id:
                    c.execute(
                        'UPDATE stakeholders SET user_role_id = ?, updated_at = ? WHERE id = ?',
                        (role_id, utcnow_iso(), existing['id']),
                    )
                    updated += 1
                continue

            _insert_stakeholder(c, workspace_id, {
                'name': name[:MAX_NAME_LENGTH],
                'visitor_id': visitor_id,
                'law_firm_id': law_firm_id,
                'user_role_id': role_id,
                'department': (row.get('Department') or '').strip() or None,
                'pendo_role': (row.get('Pendo Role') or '').strip() or None,
            })
        except sqlite3.Error as exc:
            errors.append(f'Row {index}: {exc}')
            continue
        created += 1
    conn.commit()
    conn.close()
    return jsonify({'success': created, 'updated': updated, 'errors': errors})


@app.route('/api/stakeholders/<int:stakeholder_id>', methods=['GET', 'PATCH', 'DELETE'])
@login_required
def stakeholder_detail(stakeholder_id):
    stakeholder = load_workspace_row('stakeholders', stakeholder_id, 'Stakeholder')
    if request.method == 'GET':
        return jsonify({'stakeholder': stakeholder})
    if request.method == 'DELETE':
        _delete_row('stakeholders', stakeholder_id)
        return jsonify({'success': True})
    _update_row(
        'stakeholders',
        stakeholder_id,
        _stakeholder_fields(stakeholder['workspace_id'], json_body(), partial=True),
    )
    return jsonify({'stakeholder': _fetch_row('stakeholders', stakeholder_id)})


# ===== RESEARCH NOTES =====


def _research_note_fields(data, partial=False):
    changes = {}
    if 'name' in data or not partial:
        changes['name'] = require_name(data.get('name'), 'Note name')
    for field in ('summary', 'native_notes'):
        if field in data:
            changes[field] = clean_text(data[field], field=field.replace('_', ' ').capitalize())
    if 'note_date' in data:
        note_date = (data.get('note_date') or '').strip() or None
        if note_date:
            try:
                datetime.fromisoformat(note_date)
            except ValueError:
                raise ApiError('note_date must be an ISO date') from None
        changes['note_date'] = note_date
    return changes


def _note_stakeholders(note_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        SELECT s.* FROM stakeholders s
        INNER JOIN research_note_stakeholders rns ON rns.stakeholder_id = s.id
        WHERE rns.research_note_id = ?
        ORDER BY s.name
        ''',
        (note_id,),
    )
    rows = [dict(row) for row in c.fetchall()]
    conn.close()
    return rows


def _note_out(note_id):
    note = _fetch_row('research_notes', note_id)
    note['stakeholders'] = _note_stakeholders(note_id)
    return note


@app.route('/api/projects/<int:project_id>/research-notes', methods=['GET', 'POST'])
@login_required
def research_notes(project_id):
    load_project(project_id)
    conn = db_connect()
    c = conn.cursor()
    if request.method == 'GET':
        c.execute(
            'SELECT * FROM research_notes WHERE project_id = ? ORDER BY created_at DESC',
            (project_id,),
        )
        notes = [dict(row) for row in c.fetchall()]
        conn.close()
        return jsonify({'researchNotes': notes})

    fields = _research_note_fields(json_body())
    now = utcnow_iso()
    short_id = next_short_id(c, 'research_notes', 'project_id', project_id)
    columns = ['project_id', 'short_id', 'created_at', 'updated_at', *fields]
    c.execute(
        f"INSERT INTO research_notes ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
        (project_id, short_id, now, now, *fields.values()),
    )
    note_id = c.lastrowid
    conn.commit()
    conn.close()
    return jsonify({'researchNote': _note_out(note_id)}), 201


@app.route('/api/research-notes/<int:note_id>', methods=['GET', 'PATCH', 'DELETE'])
@login_required
def research_note_detail(note_id):
    load_research_note(note_id)
    if request.method == 'GET':
        return jsonify({'researchNote': _note_out(note_id)})
    if request.method == 'DELETE':
        _delete_row('research_notes', note_id)
        return jsonify({'success': True})
    _update_row('research_notes', note_id, _research_note_fields(json_body(), partial=True))
    return jsonify({'researchNote': _note_out(note_id)})


@app.route('/api/research-notes/<int:note_id>/stakeholders', methods=['PUT'])
@login_required
def research_note_stakeholders(note_id):
    """Replace the stakeholders linked to a note."""
    _, project = load_research_note(note_id)
    stakeholder_ids = json_body().get('stakeholderIds')
    if not isinstance(stakeholder_ids, list):
        raise missing_fields_error(['stakeholderIds'])
    checked = [
        _check_reference('stakeholders', stakeholder_id, project['workspace_id'], 'Stakeholder')
        for stakeholder_id in stakeholder_ids
        if stakeholder_id not in (None, '')
    ]

    now = utcnow_iso()
    conn = db_connect()
    c = conn.cursor()
    c.execute('DELETE FROM research_note_stakeholders WHERE research_note_id = ?', (note_id,))
    c.executemany(
        'INSERT OR IGNORE INTO research_note_stakeholders (research_note_id, stakeholder_id, created_at) VALUES (?, ?, ?)',
        [(note_id, stakeholder_id, now) for stakeholder_id in checked],
    )
    conn.commit()
    conn.close()
    return jsonify({'researchNote': _note_out(note_id)})


# ===== EXAMPLES =====


def _clean_example(data):
    cleaned = {}
    for field in example_service.NARRATIVE_FIELDS:
        if field in data:
            cleaned[field] = bleach.clean(str(data[field] or ''), strip=True).strip()
    return cleaned


@app.route('/api/projects/<int:project_id>/examples', methods=['GET', 'POST'])
@login_required
def examples(project_id):
    load_project(project_id)
    if request.method == 'GET':
        actor = (request.args.get('actor') or '').strip() or None
        rows = example_service.list_examples(project_id, actor=actor)
        return jsonify({'examples': rows, 'count': len(rows)})

    example = example_service.create_example(project_id, _clean_example(json_body()), created_by=current_user.id)
    return jsonify({'example': example}), 201


@app.route('/api/projects/<int:project_id>/examples/count')
@login_required
def examples_count(project_id):
    load_project(project_id)
    return jsonify({'count': example_service.count_examples(project_id)})


@app.route('/api/projects/<int:project_id>/examples/stats')
@login_required
def examples_stats(project_id):
    load_project(project_id)
    return jsonify(example_service.get_import_statistics(project_id))


@app.route('/api/projects/<int:project_id>/examples/bulk', methods=['POST'])
@login_required
@limiter.limit('30 per hour')
def bulk_import_examples(project_id):
    """Validate then insert a list of examples, usually from a screenshot import."""
    load_project(project_id)
    data = json_body()
    items = data.get('examples')
    if not isinstance(items, list) or not items:
        raise missing_fields_error(['examples'])
    import_source = data.get('import_source') or 'screenshot'
    if import_source not in example_service.IMPORT_SOURCES:
        raise ApiError(f'Unknown import source: {import_source}')

    prepared = [
        {**_clean_example(item), 'project_id': project_id}
        for item in items
        if isinstance(item, dict)
    ]
    valid, invalid = example_service.validate_examples_for_bulk_import(prepared)
    result = example_service.bulk_create_examples(
        project_id, valid, created_by=current_user.id, import_source=import_source
    )
    result['invalid'] = invalid
    app.logger.info(
        'Bulk import into project %s: %s created, %s failed, %s invalid',
        project_id,
        result['totalSuccessful'],
        result['totalFailed'],
        len(invalid),
    )
    return jsonify(result), 201 if result['totalSuccessful'] else 200


@app.route('/api/projects/<int:project_id>/examples/import', methods=['POST'])
@login_required
@limiter.limit('15 per hour')
def import_examples_csv(project_id):
    """CSV import with actor, goal, entry_point, actions, error, outcome columns."""
    load_project(project_id)
    reader = read_csv_upload()
    headers = {name.lower().replace(' ', '_'): name for name in reader.fieldnames}
    missing = [field for field in example_service.NARRATIVE_FIELDS if field not in headers]
    if missing:
        raise ApiError(f"CSV header mismatch. Missing columns: {', '.join(missing)}")

    rows = []
    for index, row in enumerate(reader, start=1):
        if index > MAX_CSV_ROWS:
            raise ApiError(f'CSV has too many rows. Maximum allowed is {MAX_CSV_ROWS}.')
        item = {field: row.get(headers[field]) for field in example_service.NARRATIVE_FIELDS}
        rows.append({**_clean_example(item), 'project_id': project_id})

    valid, invalid = example_service.validate_examples_for_bulk_import(rows)
    result = example_service.bulk_create_examples(project_id, valid, created_by=current_user.id, import_source='csv')
    result['invalid'] = invalid
    return jsonify(result)


def _export_examples(project):
    actor = (request.args.get('actor') or '').strip() or None
    return example_service.list_examples(project['id'], actor=actor)


@app.route('/api/projects/<int:project_id>/examples/export.csv')
@login_required
@limiter.limit('25 per hour')
def export_examples_csv(project_id):
    project = load_project(project_id)
    rows = [
        [example['short_id'], *(example[field] for field in example_service.NARRATIVE_FIELDS),
         example['import_source'], example['created_at']]
        for example in _export_examples(project)
    ]
    return csv_response(
        f'project_{project_id}_examples.csv',
        ['short_id', *example_service.NARRATIVE_FIELDS, 'import_source', 'created_at'],
        rows,
    )


@app.route('/api/projects/<int:project_id>/examples/export.pdf')
@login_required
@limiter.limit('25 per hour')
def export_examples_pdf(project_id):
    project = load_project(project_id)
    workspace = _fetch_row('workspaces', project['workspace_id'])
    pdf_buffer = generate_examples_pdf(
        project_name=project['name'],
        workspace_name=workspace['name'],
        examples=_export_examples(project),
        stats=example_service.get_import_statistics(project_id),
    )
    return send_file(
        pdf_buffer,
        as_attachment=True,
        download_name=f'project_{project_id}_examples.pdf',
        mimetype='application/pdf',
    )


@app.route('/api/examples/<int:example_id>', methods=['GET', 'PATCH', 'DELETE'])
@login_required
def example_detail(example_id):
    example, _ = load_example(example_id)
    if request.method == 'GET':
        example['user_roles'] = example_service.list_example_user_roles(example_id)
        return jsonify({'example': example})
    if request.method == 'DELETE':
        example_service.delete_example(example_id)
        return jsonify({'success': True})
    return jsonify({'example': example_service.update_example(example_id, _clean_example(json_body()))})


@app.route('/api/examples/<int:example_id>/user-roles', methods=['GET', 'POST'])
@login_required
def example_user_roles(example_id):
    _, project = load_example(example_id)
    if request.method == 'POST':
        role_id = _check_reference('user_roles', json_body().get('user_role_id'), project['workspace_id'], 'User role')
        if role_id is None:
            raise missing_fields_error(['user_role_id'])
        example_service.add_example_user_role(example_id, role_id)
    return jsonify({'userRoles': example_service.list_example_user_roles(example_id)})


@app.route('/api/examples/<int:example_id>/user-roles/<int:role_id>', methods=['DELETE'])
@login_required
def remove_example_user_role(example_id, role_id):
    load_example(example_id)
    if not example_service.remove_example_user_role(example_id, role_id):
        raise ApiError('User role is not linked to this example', 404)
    return jsonify({'success': True})


# ===== USER JOURNEYS =====


def load_journey(journey_id):
    journey = journey_service.get_journey(journey_id)
    if not journey:
        raise ApiError('Journey not found', 404)
    load_project(journey['project_id'])
    return journey


@app.route('/api/projects/<int:project_id>/user-journeys', methods=['GET', 'POST'])
@login_required
def user_journeys(project_id):
    load_project(project_id)
    if request.method == 'GET':
        return jsonify({'userJourneys': journey_service.list_journeys(project_id)})

    data = json_body()
    journey = journey_service.create_journey(
        project_id,
        clean_text(data.get('name'), MAX_NAME_LENGTH, 'Journey name'),
        clean_text(data.get('description'), field='Description') or '',
        data.get('flow_data'),
        created_by=current_user.id,
    )
    return jsonify({'userJourney': journey}), 201


@app.route('/api/user-journeys/<int:journey_id>', methods=['GET', 'PATCH', 'DELETE'])
@login_required
def user_journey_detail(journey_id):
    journey = load_journey(journey_id)
    if request.method == 'GET':
        return jsonify({'userJourney': journey})
    if request.method == 'DELETE':
        journey_service.delete_journey(journey_id)
        return jsonify({'success': True})

    data = json_body()
    updates = {}
    if 'name' in data:
        updates['name'] = clean_text(data['name'], MAX_NAME_LENGTH, 'Journey name')
    if 'description' in data:
        updates['description'] = clean_text(data['description'], field='Description')
    if 'flow_data' in data:
        updates['flow_data'] = data['flow_data']
    return jsonify({'userJourney': journey_service.update_journey(journey_id, updates)})


# ===== AI JOBS =====


def _require_image(body):
    image = body.get('base64Image') or body.get('image')
    if not isinstance(image, str) or not image.strip():
        raise missing_fields_error(['base64Image'])
    image = image.strip()
    if not (image.startswith('data:image/') or image.startswith('https://')):
        raise ApiError('base64Image must be a data:image URL or an https image URL')
    return image


def _role_names_for(body):
    workspace_id = body.get('workspaceId')
    if workspace_id in (None, ''):
        return None
    try:
        workspace_id = int(workspace_id)
    except (TypeError, ValueError):
        raise ApiError('workspaceId must be an integer') from None
    require_workspace_member(workspace_id)
    return workspace_role_names(workspace_id)


def build_job_payload(job_type, body, role_names=None):
    """Validate a request body; return ``(payload, input_summary)``.

    The summary is what gets stored on the job row, so it never holds the
    raw image or transcript.
    """
    if job_type == 'transcript':
        transcript = body.get('transcript')
        if not isinstance(transcript, str) or not transcript.strip():
            raise missing_fields_error(['transcript'])
        if len(transcript) > MAX_TRANSCRIPT_LENGTH:
            raise ApiError(f'Transcript must be at most {MAX_TRANSCRIPT_LENGTH} characters')
        prompt = (body.get('prompt') or '').strip() or build_transcript_prompt(role_names)
        return (
            {'transcript': transcript, 'prompt': prompt},
            {'transcriptLength': len(transcript), 'promptLength': len(prompt)},
        )

    if job_type == 'diagram':
        image = _require_image(body)
        prompt = (body.get('prompt') or '').strip() or build_diagram_prompt(role_names)
        return (
            {'base64Image': image, 'prompt': prompt},
            {'imageSize': len(image), 'promptLength': len(prompt)},
        )

    current_journey = body.get('currentJourney')
    instruction = body.get('instruction')
    missing = []
    if not isinstance(current_journey, dict):
        missing.append('currentJourney')
    if not isinstance(instruction, str) or not instruction.strip():
        missing.append('instruction')
    if missing:
        raise missing_fields_error(missing)
    if not isinstance(current_journey.get('nodes'), list):
        raise ApiError('Current journey with nodes is required')
    if not isinstance(current_journey.get('edges'), list):
        current_journey['edges'] = []
    return (
        {'currentJourney': current_journey, 'instruction': instruction.strip()},
        {
            'nodeCount': len(current_journey['nodes']),
            'edgeCount': len(current_journey['edges']),
            'instruction': instruction.strip()[:500],
        },
    )


@app.route('/api/jobs/<job_kind>/start', methods=['POST'])
@login_required
@limiter.limit('30 per hour')
def start_job(job_kind):
    job_type = JOB_ROUTE_TYPES.get(job_kind)
    if not job_type:
        raise ApiError('Unknown job type', 404)

    body = json_body()
    role_names = _role_names_for(body) if job_type != 'edit_journey' else None
    payload, input_summary = build_job_payload(job_type, body, role_names)
    if body.get('workspaceId') not in (None, ''):
        input_summary['workspaceId'] = body.get('workspaceId')

    job_id = job_service.create_job(current_user.id, job_type, input_summary)
    job_service.dispatch_job(app, job_id, job_type, payload)
    return jsonify({'jobId': job_id, 'status': job_service.STATUS_PROCESSING}), 202


@app.route('/api/jobs/<job_id>/process', methods=['POST'])
@csrf.exempt
@limiter.exempt
def process_job(job_id):
    """Internal trigger for running a job from another worker process."""
    secret = app.config.get('JOB_PROCESS_SECRET') or ''
    provided = request.headers.get('X-Job-Secret', '')
    if not secret or not hmac.compare_digest(secret, provided):
        return jsonify({'error': 'Forbidden'}), 403

    job = job_service.get_job(job_id)
    if not job:
        return jsonify({'error': 'Job not found'}), 404
    if job['status'] != job_service.STATUS_PROCESSING:
        return jsonify({'error': 'Job is no longer processing', 'status': job['status']}), 409

    payload, _ = build_job_payload(job['job_type'], json_body())
    ok = job_service.run_job(job_id, job['job_type'], payload)
    job = job_service.get_job(job_id)
    return jsonify({'success': ok, **job_service.serialize_job_status(job)}), 200 if ok else 500


@app.route('/api/jobs/<job_id>')
@login_required
def job_status(job_id):
    if not job_id:
        raise ApiError('Missing jobId parameter')
    job = job_service.get_job(job_id)
    if not job or job['user_id'] != current_user.id:
        return jsonify({'error': 'Job not found'}), 404
    return jsonify(job_service.serialize_job_status(job))


@app.route('/api/jobs')
@login_required
def list_jobs():
    jobs = job_service.list_jobs(current_user.id)
    return jsonify({'jobs': [job_service.serialize_job_status(job) for job in jobs]})


@app.route('/api/jobs/<job_id>/save', methods=['POST'])
@login_required
def save_job_result(job_id):
    """Store a completed job's graph as a new journey in a project."""
    job = job_service.get_job(job_id)
    if not job or job['user_id'] != current_user.id:
        return jsonify({'error': 'Job not found'}), 404

    data = json_body()
    project_id = data.get('projectId')
    if project_id in (None, ''):
        raise missing_fields_error(['projectId'])
    project = load_project(project_id)
    name = clean_text(data.get('name'), MAX_NAME_LENGTH, 'Journey name') if data.get('name') else None
    description = clean_text(data['description'], field='Description') if 'description' in data else None
    journey = journey_service.create_journey_from_job(
        job, project['id'], name=name, description=description, created_by=current_user.id
    )
    return jsonify({'userJourney': journey}), 201


# ===== SYNCHRONOUS AI =====


@app.route('/api/ai/transcript-to-journey', methods=['POST'])
@login_required
@limiter.limit('30 per hour')
def transcript_to_journey():
    body = json_body()
    payload, _ = build_job_payload('transcript', body, _role_names_for(body))
    journey, usage, finish_reason = ai_service.transcript_to_journey(
        payload['transcript'], payload['prompt'], settings=ai_service.TRANSCRIPT_SYNC
    )
    return jsonify({'success': True, 'journey': journey, 'usage': usage, 'finishReason': finish_reason})


@app.route('/api/ai/diagram-to-journey', methods=['POST'])
@login_required
@limiter.limit('30 per hour')
def diagram_to_journey():
    body = json_body()
    payload, _ = build_job_payload('diagram', body, _role_names_for(body))
    journey, usage, finish_reason = ai_service.diagram_to_journey(
        payload['base64Image'], payload['prompt'], settings=ai_service.DIAGRAM
    )
    return jsonify({'success': True, 'journey': journey, 'usage': usage, 'finishReason': finish_reason})


@app.route('/api/ai/edit-journey', methods=['POST'])
@login_required
@limiter.limit('60 per hour')
def edit_journey():
    payload, _ = build_job_payload('edit_journey', json_body())
    journey, usage, finish_reason = ai_service.edit_journey(
        payload['currentJourney'], payload['instruction'], settings=ai_service.EDIT_SYNC
    )
    return jsonify({'success': True, 'journey': journey, 'usage': usage, 'finishReason': finish_reason})


@app.route('/api/ai/analyze-screenshot', methods=['POST'])
@login_required
@limiter.limit('30 per hour')
def analyze_screenshot():
    """Extract examples from a board screenshot; optionally save them to a project."""
    body = json_body()
    image = _require_image(body)
    started = perf_counter()
    valid, invalid, usage = ai_service.analyze_screenshot(image, (body.get('prompt') or '').strip() or None)
    response = {
        'examples': valid,
        'invalid': invalid,
        'usage': usage,
        'processingTime': int((perf_counter() - started) * 1000),
    }

    project_id = body.get('projectId')
    if project_id not in (None, '') and parse_bool(body.get('save', False)):
        project_id = load_project(project_id)['id']
        prepared = [{**_clean_example(item), 'project_id': project_id} for item in valid]
        to_create, rejected = example_service.validate_examples_for_bulk_import(prepared)
        response['import'] = example_service.bulk_create_examples(
            project_id, to_create, created_by=current_user.id, import_source='screenshot'
        )
        response['import']['invalid'] = rejected
    return jsonify(response)


# ===== HEALTH =====


@app.route('/health')
def health():
    return jsonify({'status': 'ok', 'service': 'journey-research'}), 200


@app.route('/metrics')
def metrics():
    total = REQUEST_METRICS['requests_total']
    avg_latency = (REQUEST_METRICS['latency_ms_total'] / total) if total else 0.0
    return jsonify({
        'requests_total': total,
        'errors_total': REQUEST_METRICS['errors_total'],
        'avg_latency_ms': round(avg_latency, 2),
    }), 200


# ===== ERROR HANDLERS =====


@app.errorhandler(ApiError)
def api_error(error):
    return jsonify({'error': error.message}), error.status_code


@app.errorhandler(example_service.ExampleValidationError)
def example_validation_error(error):
    return jsonify({'error': str(error), 'errors': error.errors}), 400


@app.errorhandler(journey_service.JourneyError)
def journey_error(error):
    return jsonify({'error': str(error)}), error.status_code


@app.errorhandler(custom_columns.CustomColumnError)
def custom_column_error(error):
    return jsonify({'error': str(error)}), error.status_code


@app.errorhandler(ai_service.AIServiceError)
def ai_service_error(error):
    app.logger.warning('AI request failed: %s', error)
    return jsonify({'error': str(error)}), error.status_code


@app.errorhandler(CSRFError)
def csrf_error(error):
    return jsonify({'error': 'Missing or invalid CSRF token'}), 400


@app.errorhandler(429)
def rate_limited(error):
    reset_ts = int((datetime.now(timezone.utc) + timedelta(minutes=15)).timestamp())
    resp = jsonify({'error': 'Too many requests. Please wait and try again.', 'resetAt': reset_ts})
    resp.status_code = 429
    resp.headers['X-RateLimit-Reset'] = str(reset_ts)
    return resp


@app.errorhandler(404)
def not_found(error):
    return jsonify({'error': 'Not found'}), 404


@app.errorhandler(405)
def method_not_allowed(error):
    return jsonify({'error': 'Method not allowed'}), 405


@app.errorhandler(RequestEntityTooLarge)
def request_too_large(error):
    limit_mb = app.config.get('MAX_CONTENT_LENGTH', 0) // (1024 * 1024)
    return jsonify({'error': f'Request exceeds the {limit_mb} MB limit. Use a smaller image or file.'}), 413


@app.errorhandler(500)
def internal_error(error):
    return jsonify({'error': 'An unexpected server error occurred. Please retry in a moment.'}), 500


@app.errorhandler(HTTPException)
def http_error(error):
    return jsonify({'error': error.description}), error.code


# ===== APPLICATION ENTRY POINT =====

if __name__ == '__main__':
    with app.app_context():
        init_db()
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=app.config['DEBUG'])
