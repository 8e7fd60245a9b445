"""Background maintenance scheduling."""

from .apsched_adapter import MaintenanceScheduler

__all__ = ["MaintenanceScheduler"]
