#!/usr/bin/env python3
"""Admin maintenance CLI for workspace and AI job operations."""

from __future__ import annotations

import argparse
import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import app  # noqa: E402
from database import db_connect, utcnow_iso  # noqa: E402
from services import job_service  # noqa: E402
from services.prompts import build_transcript_prompt  # noqa: E402


def add_member(workspace_id: int, email: str, role: str):
    """Add or re-role a member directly, skipping the invite email."""
    email = email.strip().lower()
    conn = db_connect(); cur = conn.cursor()
    cur.execute("SELECT id FROM workspaces WHERE id = ?", (workspace_id,))
    if not cur.fetchone():
        conn.close()
        print("workspace_not_found")
        return
    cur.execute("SELECT id, full_name FROM users WHERE email = ?", (email,))
    user = cur.fetchone()
    status = 'active' if user else 'pending'
    now = utcnow_iso()
    cur.execute(
        """
        INSERT INTO workspace_users (
            workspace_id, user_id, user_email, role, status, full_name, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(workspace_id, user_email) DO UPDATE SET role = excluded.role, updated_at = excluded.updated_at
        """,
        (workspace_id, user['id'] if user else None, email, role, status, user['full_name'] if user else None, now, now),
    )
    conn.commit(); changed = cur.rowcount; conn.close()
    print(f"updated_rows={changed} status={status}")


def expire_jobs(minutes: int):
    print(f"expired={job_service.expire_stale_jobs(minutes)}")


def list_jobs(email: str | None, status: str | None, limit: int):
    clauses, params = [], []
    if email:
        clauses.append("u.email = ?")
        params.append(email.strip().lower())
    if status:
        clauses.append("j.status = ?")
        params.append(status)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    conn = db_connect(); cur = conn.cursor()
    cur.execute(
        f"""
        SELECT j.id, j.job_type, j.status, j.created_at, j.error_message, u.email
        FROM ai_processing_jobs j
        LEFT JOIN users u ON u.id = j.user_id
        {where}
        ORDER BY j.created_at DESC
        LIMIT ?
        """,
        (*params, limit),
    )
    for row in cur.fetchall():
        print(f"{row['id']}  {row['job_type']:<12} {row['status']:<10} {row['created_at']}  {row['email'] or '-'}  {row['error_message'] or ''}")
    conn.close()


def run_transcript_job(path: str, email: str):
    """Run a transcript job inline and print the resulting journey."""
    with open(path, encoding='utf-8') as handle:
        transcript = handle.read()
    conn = db_connect(); cur = conn.cursor()
    cur.execute("SELECT id FROM users WHERE email = ?", (email.strip().lower(),))
    user = cur.fetchone()
    conn.close()
    if not user:
        print("user_not_found")
        return 1

    job_id = job_service.create_job(user['id'], 'transcript', {'transcriptLength': len(transcript), 'source': path})
    ok = job_service.run_job(job_id, 'transcript', {'transcript': transcript, 'prompt': build_transcript_prompt()})
    job = job_service.get_job(job_id)
    if not ok:
        print(f"failed job={job_id} error={job['error_message']}")
        return 1
    print(json.dumps(job['result_data'], indent=2))
    return 0


def main():
    parser = argparse.ArgumentParser(description='Journey Research admin utility')
    sub = parser.add_subparsers(dest='cmd', required=True)

    p1 = sub.add_parser('add-member')
    p1.add_argument('--workspace-id', type=int, required=True)
    p1.add_argument('--email', required=True)
    p1.add_argument('--role', required=True, choices=['owner', 'admin', 'member'])

    p2 = sub.add_parser('expire-jobs')
    p2.add_argument('--minutes', type=int, default=None)

    p3 = sub.add_parser('list-jobs')
    p3.add_argument('--email')
    p3.add_argument('--status', choices=list(job_service.JOB_STATUSES))
    p3.add_argument('--limit', type=int, default=50)

    p4 = sub.add_parser('run-job')
    p4.add_argument('--type', required=True, choices=['transcript'])
    p4.add_argument('--file', required=True)
    p4.add_argument('--email', required=True)

    args = parser.parse_args()

    with app.app_context():
        if args.cmd == 'add-member':
            add_member(args.workspace_id, args.email, args.role)
        elif args.cmd == 'expire-jobs':
            expire_jobs(args.minutes if args.minutes is not None else app.config['JOB_STALE_MINUTES'])
        elif args.cmd == 'list-jobs':
            list_jobs(args.email, args.status, args.limit)
        elif args.cmd == 'run-job':
            return run_transcript_job(args.file, args.email)
    return 0


if __name__ == '__main__':
    sys.exit(main())
