"""Service modules"""
from .engine import CrucibleEngine
from .monitor import HealthMonitor
from .reconciler import Reconciler

__all__ = ["CrucibleEngine", "HealthMonitor", "Reconciler"]
