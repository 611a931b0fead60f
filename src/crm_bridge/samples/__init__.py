"""Sample table definitions."""
