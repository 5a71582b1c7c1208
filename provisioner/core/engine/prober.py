"""
Fact prober — decide whether a step's postcondition already holds.

Probes are read-only and may be called any number of times. A probe
that fails (ProbeError or anything else) yields UNKNOWN, which the
executor treats like UNSATISFIED: re-executing is always safer than
silently skipping.
"""

from __future__ import annotations

import logging

from provisioner.core.engine.errors import ProbeError
from provisioner.core.models.step import ProbeResult, Step, StepContext

logger = logging.getLogger(__name__)


def probe(step: Step, context: StepContext | None = None) -> ProbeResult:
    """Inspect host state for a step.

    A step without a probe function has no host-side evidence; the
    state record alone decides for it, so this returns SATISFIED.

    Returns:
        SATISFIED, UNSATISFIED, or UNKNOWN. Never raises.
    """
    if step.probe is None:
        return ProbeResult.SATISFIED

    ctx = context or StepContext(step_name=step.name)
    try:
        result = step.probe(ctx)
    except ProbeError as e:
        logger.warning("Probe for '%s' failed: %s", step.name, e)
        return ProbeResult.UNKNOWN
    except Exception as e:
        logger.warning("Probe for '%s' raised %s: %s", step.name, type(e).__name__, e)
        return ProbeResult.UNKNOWN

    if not isinstance(result, ProbeResult):
        logger.warning("Probe for '%s' returned %r, treating as unknown", step.name, result)
        return ProbeResult.UNKNOWN

    logger.debug("Probe %s → %s", step.name, result.value)
    return result


def is_satisfied(result: ProbeResult) -> bool:
    """UNKNOWN counts as not satisfied."""
    return result == ProbeResult.SATISFIED
