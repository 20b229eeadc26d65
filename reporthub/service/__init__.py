"""HTTP service for report uploads."""
