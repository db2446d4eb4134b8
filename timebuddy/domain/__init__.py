"""Domain data model."""
