"""Step kinds — bindings between manifest steps and the host.

Public re-exports for convenient access.
"""

from provisioner.adapters.base import StepKind
from provisioner.adapters.mock import MockKind
from provisioner.adapters.registry import KindRegistry, default_registry

__all__ = [
    "KindRegistry",
    "MockKind",
    "StepKind",
    "default_registry",
]
