"""Monitoring: structured logging, metrics and telemetry."""
