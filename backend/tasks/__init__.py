from .celery_app import celery_app, enqueue_verification_job, cleanup_stuck_verifications

__all__ = ['celery_app', 'enqueue_verification_job', 'cleanup_stuck_verifications']
