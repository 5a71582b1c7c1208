"""
Manifest model — the declarative step list loaded from YAML.

A manifest is a declaration of intent: which steps exist, what kind
each one is, and the parameters of that kind. The binder turns every
StepSpec into an executable Step.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from provisioner.core.models.step import FailurePolicy, PolicyMode


class FailureSpec(BaseModel):
    """Failure policy as written in the manifest.

    Accepts either a mapping or the bare policy name::

        failure: skip_on_error
        failure: {policy: retry_then_abort, max_attempts: 3, backoff: 5}
    """

    policy: Literal["abort", "skip_on_error", "retry_then_abort"] = "abort"
    max_attempts: int = Field(default=3, ge=1)
    backoff: float = Field(default=1.0, ge=0)

    def to_policy(self) -> FailurePolicy:
        mode = PolicyMode(self.policy)
        if mode == PolicyMode.RETRY_THEN_ABORT:
            return FailurePolicy.retry_then_abort(self.max_attempts, self.backoff)
        return FailurePolicy(mode)


class StepSpec(BaseModel):
    """One step declaration."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str
    kind: str
    description: str = ""
    depends_on: list[str] = Field(default_factory=list)
    after: list[str] = Field(default_factory=list)
    watch: list[str] = Field(default_factory=list)
    failure: FailureSpec | None = None
    timeout: float | None = Field(default=None, gt=0)
    params: dict[str, Any] = Field(default_factory=dict, alias="with")

    @field_validator("failure", mode="before")
    @classmethod
    def coerce_failure(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"policy": value}
        return value


class Defaults(BaseModel):
    """Manifest-wide defaults for steps that don't set their own."""

    timeout: float | None = Field(default=None, gt=0)
    failure: FailureSpec = Field(default_factory=FailureSpec)

    @field_validator("failure", mode="before")
    @classmethod
    def coerce_failure(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"policy": value}
        return value


class Manifest(BaseModel):
    """Root manifest document."""

    version: int = 1
    name: str
    description: str = ""
    vars: dict[str, Any] = Field(default_factory=dict)
    defaults: Defaults = Field(default_factory=Defaults)
    steps: list[StepSpec] = Field(default_factory=list)

    def get_step(self, name: str) -> StepSpec | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    @property
    def step_names(self) -> list[str]:
        return [s.name for s in self.steps]
