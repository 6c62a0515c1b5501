"""Provision Azure infrastructure and deploy the application container."""

__version__ = "0.1.0"
