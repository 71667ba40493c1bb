"""Session reconstruction and bucketed rollups over ingested events."""
