"""Autotask: natural-language scheduled tasks."""

__version__ = "0.1.0"
