"""Synchronization: identity, background queue, conflict resolution and the service facade."""
