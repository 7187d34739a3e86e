"""
Challenge message schema.

Contains the Pydantic model for challenge messages consumed from the intake
queue. Validation is strict: no coercion between JSON types.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

SUPPORTED_SCHEMA_VERSION = 1


class ChallengeMessage(BaseModel):
    """Schema for challenge messages on the intake queue.

    Attributes:
        schema_version: Payload format version, always SUPPORTED_SCHEMA_VERSION
        external_id: Producer-assigned identifier, the idempotency key for upserts
        name: Challenge name
        description: Optional free-text description
        metadata: Arbitrary JSON object, empty when absent

    Example:
        >>> msg = ChallengeMessage(schema_version=1, external_id="ext-1", name="Alpha")
        >>> msg.metadata
        {}
    """

    model_config = ConfigDict(strict=True, extra="ignore", frozen=True)

    schema_version: int = Field(..., description="Payload format version")
    external_id: str = Field(..., min_length=1, description="Producer-assigned identifier")
    name: str = Field(..., min_length=1, description="Challenge name")
    description: str | None = Field(default=None, description="Optional description")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Arbitrary JSON object")

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, v: Any) -> Any:
        return {} if v is None else v

    def upsert_fields(self) -> dict[str, Any]:
        """Fields written to the store, keyed by column name."""
        return {
            "name": self.name,
            "description": self.description,
            "metadata": dict(self.metadata),
        }
