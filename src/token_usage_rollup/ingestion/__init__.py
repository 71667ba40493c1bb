"""Incremental ingestion pipeline for tool usage events."""
