"""Image records, lineage and saved-image persistence."""
