"""Vessel single-run workload launcher package."""

from vessel.models import ExitOutcome, RunFlags, RunMode, RunRequest
from vessel.run import run_container, validate_run_args

__all__ = [
    "ExitOutcome",
    "RunFlags",
    "RunMode",
    "RunRequest",
    "run_container",
    "validate_run_args",
]
