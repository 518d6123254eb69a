"""
Vercel serverless entry point for Journey Research.

NOTE ON SERVERLESS DEPLOYS:
Only /tmp is writable, so DATABASE_PATH must point there and data is lost on
cold starts. Background threads are frozen once a response is returned, so set
JOB_DISPATCH_MODE=inline: /api/jobs/<kind>/start then runs the job before it
responds, and the client still polls /api/jobs/<job_id> for the result.

For Railway, Render, Fly.io or a VPS, run gunicorn with gunicorn.conf.py and a
persistent disk for the SQLite file.
"""

import sys
import os

# Make the project root importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Import the Flask app object
from app import app, init_db

# /tmp is wiped on cold starts, so create the schema on every import
with app.app_context():
    init_db()

# Vercel expects a handler named `app` at module level
# The @vercel/python runtime calls app(environ, start_response) directly
