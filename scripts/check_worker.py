#!/usr/bin/env python
"""Check that a Celery worker is up and has the verification task registered."""
import os
import sys
from celery import Celery

TASK_NAME = 'sensorproof.process_verification'
broker_url = os.getenv('CELERY_BROKER_URL', 'redis://localhost:6379/0')

app = Celery('sensorproof-check')
app.conf.broker_url = broker_url

try:
    inspect = app.control.inspect()
    registered = inspect.registered() or {}
except Exception as e:
    print(f"Error connecting to broker {broker_url}: {e}")
    sys.exit(1)

if not registered:
    print("No workers answered. Start one with: celery -A backend.tasks.celery_app worker")
    sys.exit(1)

for worker, tasks in registered.items():
    state = "ok" if TASK_NAME in tasks else f"missing {TASK_NAME}"
    print(f"{worker}: {state}")

if not any(TASK_NAME in tasks for tasks in registered.values()):
    sys.exit(1)
