"""Pydantic models for runs, events and problems."""
