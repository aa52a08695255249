"""Admission control and abuse detection for the booking platform API."""

__version__ = "0.1.0"
