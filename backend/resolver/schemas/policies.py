"""Pydantic models for tenant content policies.

A policy row stores its configuration as a single JSON blob whose shape is
selected by the policy ``type``. The blob is parsed into the matching config
variant when the row is loaded, so the evaluator never touches raw dicts.
"""

import json
from enum import StrEnum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class PolicyType(StrEnum):
    """Kinds of content policy."""

    TOPIC_FILTER = "topic_filter"
    PII_FILTER = "pii_filter"
    TONE = "tone"
    LENGTH = "length"


class PolicyMode(StrEnum):
    """When a policy is evaluated: on the user message or on the reply."""

    PRE = "pre"
    POST = "post"


class PiiKind(StrEnum):
    """Personal data kinds the PII filter can detect."""

    EMAIL = "email"
    PHONE = "phone"
    SSN = "ssn"
    CREDIT_CARD = "credit_card"
    IP_ADDRESS = "ip_address"


class PiiAction(StrEnum):
    BLOCK = "block"
    REDACT = "redact"


class _PolicyConfig(BaseModel):
    # Stored configs use camelCase keys
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class TopicFilterConfig(_PolicyConfig):
    type: Literal["topic_filter"] = "topic_filter"
    blocked_topics: list[str] = Field(default_factory=list, description="Case-insensitive keywords")
    blocked_patterns: list[str] = Field(
        default_factory=list, description="Case-insensitive regular expressions"
    )


class PiiFilterConfig(_PolicyConfig):
    type: Literal["pii_filter"] = "pii_filter"
    detect: list[PiiKind] = Field(default_factory=list, description="PII kinds to look for")
    action: PiiAction = Field(default=PiiAction.BLOCK, description="Block the message or redact spans")


class ToneConfig(_PolicyConfig):
    type: Literal["tone"] = "tone"
    blocked_phrases: list[str] = Field(default_factory=list)
    block_uncertain: bool = Field(default=False, description="Reject hedging language")


class LengthConfig(_PolicyConfig):
    type: Literal["length"] = "length"
    min_length: int | None = Field(default=None, ge=0)
    max_length: int | None = Field(default=None, ge=0)


PolicyConfig = Annotated[
    Union[TopicFilterConfig, PiiFilterConfig, ToneConfig, LengthConfig],
    Field(discriminator="type"),
]


class Policy(BaseModel):
    """A tenant content policy with its typed configuration."""

    id: str = Field(..., description="Policy identifier")
    tenant_id: str = Field(..., description="Owning tenant")
    name: str = Field(..., description="Human-readable policy name")
    type: PolicyType = Field(..., description="Policy kind")
    mode: PolicyMode = Field(..., description="Evaluation phase")
    config: PolicyConfig
    enabled: bool = True
    priority: int = 0

    @model_validator(mode="before")
    @classmethod
    def _tag_config(cls, data: Any) -> Any:
        """Parse a JSON config blob and tag it with the policy type."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        config = data.get("config") or {}
        if isinstance(config, str):
            config = json.loads(config)
        if isinstance(config, dict):
            config = {**config, "type": str(data.get("type"))}
        data["config"] = config
        return data

    @model_validator(mode="after")
    def _check_config_matches_type(self) -> "Policy":
        if self.config.type != self.type:
            raise ValueError(f"{self.config.type} config does not fit a {self.type} policy")
        return self


class PolicyViolation(BaseModel):
    """A single rule failure."""

    policy_id: str
    policy_name: str
    policy_type: PolicyType
    message: str = Field(..., description="Human-readable reason")


class PolicyResult(BaseModel):
    """Outcome of evaluating a policy set against one text."""

    passed: bool
    violations: list[PolicyViolation] = Field(default_factory=list)
