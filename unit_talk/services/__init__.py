"""
Supervision services shared by every agent: error taxonomy and handling,
retry, dead-letter queue, persistence, events, scheduling and alerting.
"""
