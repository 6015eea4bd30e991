#!/usr/bin/env python
"""Celery worker entrypoint for sensor dataset verification."""
import os

from backend.tasks.celery_app import celery_app, cleanup_stuck_verifications

if __name__ == '__main__':
    # A restarted worker owns nothing that is still marked RUNNING
    cleanup_stuck_verifications()
    celery_app.worker_main([
        'worker',
        f"--loglevel={os.getenv('CELERY_LOG_LEVEL', 'info')}",
        f"--concurrency={os.getenv('CELERY_CONCURRENCY', '2')}",
    ])
