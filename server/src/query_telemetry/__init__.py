"""Collection and normalization of SQL statement telemetry."""
