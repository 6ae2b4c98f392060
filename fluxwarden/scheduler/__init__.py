"""
FLUXWARDEN Scheduler — per-node recurring compliance cycles.
"""

from .automation import AutomationScheduler, AutomationState, CycleReport, NodeAutomation

__all__ = ["AutomationScheduler", "AutomationState", "CycleReport", "NodeAutomation"]
