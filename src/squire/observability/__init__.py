"""Metrics exposition, health checks and status snapshots for task dashboards."""
