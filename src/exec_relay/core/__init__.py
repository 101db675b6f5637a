"""Run sessions, event streams and diagnostics."""
