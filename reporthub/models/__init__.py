"""Data models for report ingestion."""
