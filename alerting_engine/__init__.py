"""
Detection Rule Execution Engine.

Scans rolling time windows of event data for rule matches, removes matches
covered by exception lists, suppresses duplicates by configurable grouping
fields and persists the resulting alerts exactly once per occurrence.

This package provides:
- Data models for rules, time windows, matches, alerts and run results
- Abstract interfaces for the search backend and external collaborators
- Configuration management
- Backend clients for Elasticsearch, Redis and PostgreSQL
- The rule execution pipeline and the service that schedules it
"""

__version__ = "0.1.0"
