"""HTTP surface."""

from signalgate.api.app import create_app

__all__ = ["create_app"]
