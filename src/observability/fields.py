"""Canonical structured logging field names."""

TIMESTAMP = "timestamp"
LEVEL = "level"
LOGGER = "logger"
MESSAGE = "message"

SERVICE = "service"

# Job correlation fields.
JOB_ID = "job_id"
QUEUE = "queue"
ATTEMPT = "attempt"
RAW_NOTE_ID = "raw_note_id"
REVIEW_ID = "review_id"
