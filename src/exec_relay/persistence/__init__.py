"""Archive of finished runs."""
