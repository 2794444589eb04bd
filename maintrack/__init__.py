"""
Maintenance task tracker synchronization core.

Keeps an in-memory task list in step with a remote relational store and its
row-level change feed, and records every status transition in an audit trail.
"""

__version__ = "0.1.0"
