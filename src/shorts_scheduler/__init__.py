"""Scheduling and job-state engine for generated short-video publishing."""

__version__ = "0.1.0"
