"""
Domain models for the provisioning engine.

All models are re-exported here for convenient access:

    from provisioner.core.models import Step, StepResult, StateRecord
"""

from provisioner.core.models.manifest import FailureSpec, Manifest, StepSpec
from provisioner.core.models.result import (
    RunMode,
    RunReport,
    RunState,
    StepResult,
    StepStatus,
)
from provisioner.core.models.state import RunRecord, StateRecord, StepRecord
from provisioner.core.models.step import (
    FailurePolicy,
    PolicyMode,
    ProbeResult,
    Step,
    StepContext,
    fingerprint_of,
)

__all__ = [
    # step.py
    "FailurePolicy",
    # manifest.py
    "FailureSpec",
    "Manifest",
    "PolicyMode",
    "ProbeResult",
    # state.py
    "RunRecord",
    # result.py
    "RunMode",
    "RunReport",
    "RunState",
    "StateRecord",
    "Step",
    "StepContext",
    "StepRecord",
    "StepResult",
    "StepSpec",
    "StepStatus",
    "fingerprint_of",
]
