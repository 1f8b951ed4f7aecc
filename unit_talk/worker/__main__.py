"""
Allow ``python -m unit_talk.worker`` to start the agent worker.

This thin wrapper delegates to ``unit_talk.worker.main.run_worker()``.
"""

from unit_talk.worker.main import run_worker

run_worker()
