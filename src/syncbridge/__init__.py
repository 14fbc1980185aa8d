"""
Sync Bridge - keeps a legacy device-management platform in step with its new authority

Two halves:
- Sync: change events from the source engine are mapped and applied to the
  legacy platform idempotently, with bounded retry and a dead-letter store
- Routing: legacy API calls are classified and served from the read model or
  the engine, falling back to the legacy platform whenever routing fails
"""

__version__ = "0.1.0"
