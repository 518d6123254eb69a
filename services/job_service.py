"""Asynchronous AI processing jobs.

A job row is created in ``processing`` by a start handler, then moved to
``completed`` or ``failed`` exactly once by ``run_job``. The terminal
update only applies while the row is still ``processing``.
"""

from __future__ import annotations

import atexit
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Optional

from database import db_connect, deserialize_json, serialize_json, utcnow_iso
from services import ai_service

logger = logging.getLogger(__name__)

JOB_TYPES = ('transcript', 'diagram', 'edit_journey')
STATUS_PROCESSING = 'processing'
STATUS_COMPLETED = 'completed'
STATUS_FAILED = 'failed'
JOB_STATUSES = (STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED)

DISPATCH_FAILED_MESSAGE = 'Failed to start processing'
STALE_JOB_MESSAGE = 'Processing timed out'

_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()


def create_job(user_id, job_type, input_data) -> str:
    if job_type not in JOB_TYPES:
        raise ValueError(f'Unknown job type: {job_type}')
    job_id = str(uuid.uuid4())
    now = utcnow_iso()
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        INSERT INTO ai_processing_jobs (id, user_id, job_type, status, input_data, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ''',
        (job_id, user_id, job_type, STATUS_PROCESSING, serialize_json(input_data or {}), now, now),
    )
    conn.commit()
    conn.close()
    logger.info('[%s] Created %s job for user %s', job_id, job_type, user_id)
    return job_id


def _finish_job(job_id, status, result=None, error_message=None, metadata=None) -> bool:
    now = utcnow_iso()
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        UPDATE ai_processing_jobs
        SET status = ?, result_data = ?, error_message = ?, metadata = ?,
            completed_at = ?, updated_at = ?
        WHERE id = ? AND status = ?
        ''',
        (
            status,
            serialize_json(result) if result is not None else None,
            error_message,
            serialize_json(metadata) if metadata else None,
            now,
            now,
            job_id,
            STATUS_PROCESSING,
        ),
    )
    changed = c.rowcount
    conn.commit()
    conn.close()
    if not changed:
        logger.warning('[%s] Ignoring %s update; job is missing or already finished', job_id, status)
    return changed > 0


def complete_job(job_id, result, metadata=None) -> bool:
    return _finish_job(job_id, STATUS_COMPLETED, result=result, metadata=metadata)


def fail_job(job_id, message) -> bool:
    return _finish_job(job_id, STATUS_FAILED, error_message=message)


def _job_from_row(row):
    job = dict(row)
    job['input_data'] = deserialize_json(job['input_data'], {})
    job['result_data'] = deserialize_json(job['result_data'], None)
    job['metadata'] = deserialize_json(job['metadata'], {})
    return job


def get_job(job_id):
    conn = db_connect()
    c = conn.cursor()
    c.execute('SELECT * FROM ai_processing_jobs WHERE id = ?', (job_id,))
    row = c.fetchone()
    conn.close()
    return _job_from_row(row) if row else None


def list_jobs(user_id, limit=20):
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        'SELECT * FROM ai_processing_jobs WHERE user_id = ? ORDER BY created_at DESC LIMIT ?',
        (user_id, limit),
    )
    jobs = [_job_from_row(row) for row in c.fetchall()]
    conn.close()
    return jobs


def serialize_job_status(job):
    return {
        'jobId': job['id'],
        'jobType': job['job_type'],
        'status': job['status'],
        'result': job['result_data'],
        'error': job['error_message'],
        'metadata': job['metadata'],
        'createdAt': job['created_at'],
        'completedAt': job['completed_at'],
    }


def _record_failure(job_id, message):
    try:
        fail_job(job_id, message)
    except Exception:  # noqa: BLE001
        logger.exception('[%s] Could not record failure; left for expire-jobs', job_id)


def run_job(job_id, job_type, payload) -> bool:
    """Do the AI work for one job and record its terminal state."""
    logger.info('[%s] Starting %s processing', job_id, job_type)
    try:
        if job_type == 'transcript':
            journey, usage, finish_reason = ai_service.transcript_to_journey(
                payload['transcript'], payload['prompt'], settings=ai_service.TRANSCRIPT_JOB
            )
        elif job_type == 'diagram':
            journey, usage, finish_reason = ai_service.diagram_to_journey(
                payload['base64Image'], payload['prompt'], settings=ai_service.DIAGRAM
            )
        elif job_type == 'edit_journey':
            journey, usage, finish_reason = ai_service.edit_journey(
                payload['currentJourney'], payload['instruction'], settings=ai_service.EDIT_JOB
            )
        else:
            raise ValueError(f'Unknown job type: {job_type}')
        complete_job(job_id, journey, metadata={'usage': usage, 'finishReason': finish_reason})
    except Exception as exc:  # noqa: BLE001
        logger.exception('[%s] Processing failed', job_id)
        _record_failure(job_id, str(exc) or exc.__class__.__name__)
        return False

    logger.info('[%s] Completed with %s nodes', job_id, len(journey.get('nodes', [])))
    return True


def _get_executor(app) -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(
                max_workers=app.config.get('JOB_WORKERS', 4),
                thread_name_prefix='ai-job',
            )
            atexit.register(_executor.shutdown, wait=False)
        return _executor


def _log_unhandled(job_id):
    def _callback(future):
        if future.cancelled():
            logger.warning('[%s] Job was cancelled before it ran', job_id)
            return
        exc = future.exception()
        if exc is not None:
            logger.error('[%s] Job thread raised', job_id, exc_info=exc)
    return _callback


def dispatch_job(app, job_id, job_type, payload):
    """Hand ``run_job`` to the background pool, or run it now in inline mode."""
    def _task():
        with app.app_context():
            run_job(job_id, job_type, payload)

    if app.config.get('JOB_DISPATCH_MODE', 'thread') == 'inline':
        _task()
        return

    try:
        future = _get_executor(app).submit(_task)
    except RuntimeError:
        logger.exception('[%s] Could not submit job to the worker pool', job_id)
        _record_failure(job_id, DISPATCH_FAILED_MESSAGE)
        return
    future.add_done_callback(_log_unhandled(job_id))


def expire_stale_jobs(max_age_minutes) -> int:
    """Fail ``processing`` jobs older than ``max_age_minutes``."""
    cutoff = (datetime.now(timezone.utc) - timedelta(minutes=max_age_minutes)).isoformat()
    now = utcnow_iso()
    conn = db_connect()
    c = conn.cursor()
    c.execute(
        '''
        UPDATE ai_processing_jobs
        SET status = ?, error_message = ?, completed_at = ?, updated_at = ?
        WHERE status = ? AND created_at < ?
        ''',
        (STATUS_FAILED, STALE_JOB_MESSAGE, now, now, STATUS_PROCESSING, cutoff),
    )
    expired = c.rowcount
    conn.commit()
    conn.close()
    if expired:
        logger.info('Expired %s stale processing job(s)', expired)
    return expired
