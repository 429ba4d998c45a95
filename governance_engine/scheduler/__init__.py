"""
Scheduler Package.

Exports the Orchestrator and its job names.
"""

from .orchestrator import JOBS, Orchestrator

__all__ = ["JOBS", "Orchestrator"]
