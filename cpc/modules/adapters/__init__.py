"""Adapters to the three external systems of record."""
from .base import Adapter, CommandResult, run_command
from .tofu import InfraAdapter, InfraDelta
from .ansible import ConfigRunnerAdapter, PlaybookRun
from .kube import ControlPlaneAdapter, ManifestApply, ResourceSelector

__all__ = [
    "Adapter",
    "CommandResult",
    "run_command",
    "InfraAdapter",
    "InfraDelta",
    "ConfigRunnerAdapter",
    "PlaybookRun",
    "ControlPlaneAdapter",
    "ManifestApply",
    "ResourceSelector",
]
