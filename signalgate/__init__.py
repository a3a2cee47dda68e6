"""Trade-alert webhook gateway."""

__version__ = "0.1.0"
