"""
Unit Talk Agent Worker Package
==============================

Lifecycle, health and process composition for long-running agents.

This package contains:
- ``base_agent.py``    -- ``BaseAgent`` lifecycle controller every worker extends
- ``health.py``        -- Health/metrics models, default policy, ``HealthMonitor``
- ``memory_guard.py``  -- psutil memory readings
- ``supervisor.py``    -- Builds shared collaborators and runs the agents
- ``health_server.py`` -- ``GET /health`` HTTP server
- ``main.py``          -- Process entry point (``python -m unit_talk.worker``)
"""
