import os

bind = f"0.0.0.0:{os.getenv('PORT', '10000')}"
# Each worker runs its own AI job pool (JOB_WORKERS threads); keep the count low
workers = int(os.getenv('GUNICORN_WORKERS', '2'))
threads = int(os.getenv('GUNICORN_THREADS', '4'))
worker_class = os.getenv('GUNICORN_WORKER_CLASS', 'gthread')
# Synchronous /api/ai/* calls can wait on the model for a couple of minutes
timeout = int(os.getenv('GUNICORN_TIMEOUT', '180'))
graceful_timeout = 60
keepalive = 5
max_requests = 1000
max_requests_jitter = 50
accesslog = '-'
errorlog = '-'
loglevel = os.getenv('GUNICORN_LOG_LEVEL', 'info')


def on_starting(server):
    # Create the schema once in the master before workers fork
    from app import app, init_db

    with app.app_context():
        init_db()
