"""Replica -- the pure synchronization kernel for the Taskflow dashboard."""
