"""Celery workers for the note triage pipeline."""
