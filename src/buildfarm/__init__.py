"""Buildfarm - execution orchestration core for a CI build farm.

This package decides which queued task runs next on which worker host,
provisions hosts with the agent binary over SSH, and reconciles finished
tasks with the rest of the fleet.
"""

__version__ = "0.1.0"
