"""Logging helpers shared by the supervisor and worker processes."""
