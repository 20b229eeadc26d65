"""Postgres persistence for test runs and metrics."""
