"""Scheduled file retrieval orchestration.

Evaluates tenant-scoped cron schedules, dispatches file discovery checks
over FTP, HTTPS and object storage, and records execution history.
"""

__version__ = "0.1.0"
