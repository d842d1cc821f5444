"""
Load experiment driver for a code search service.

This package expands a matrix of experiment options into test cases, issues
pulse-paced search queries against the service while capturing its pprof
telemetry, and records every query outcome for later analysis.
"""

from .main import main

__all__ = ["main"]
