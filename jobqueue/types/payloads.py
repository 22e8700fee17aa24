"""
Typed payloads, one model per job type.

The store keeps payloads as opaque JSON; handlers declare the model their
type expects and the worker validates against it before the handler runs.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from jobqueue.errors import PayloadValidationError


class RenditionKind(StrEnum):
    VIDEO = "video"
    THUMBNAIL = "thumbnail"


class RenditionSpec(BaseModel):
    """One output variant of a source asset."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_.-]+$")
    kind: RenditionKind = RenditionKind.VIDEO
    width: int = Field(..., gt=0, le=7680)
    height: int | None = Field(default=None, gt=0, le=4320)
    # Seek offset for thumbnails
    offset_seconds: float = Field(default=1.0, ge=0)
    container: str = Field(default="mp4", pattern=r"^[a-z0-9]+$")

    @property
    def filename(self) -> str:
        extension = "jpg" if self.kind == RenditionKind.THUMBNAIL else self.container
        return f"{self.name}.{extension}"


class MediaProcessPayload(BaseModel):
    """Payload of media.process jobs."""

    model_config = ConfigDict(extra="forbid")

    asset_key: str = Field(..., min_length=1, max_length=255)
    source_path: str = Field(..., min_length=1)
    renditions: list[RenditionSpec] = Field(..., min_length=1)
    min_viable_renditions: int | None = Field(default=None, ge=1)

    @field_validator("renditions")
    @classmethod
    def unique_names(cls, renditions: list[RenditionSpec]) -> list[RenditionSpec]:
        names = [r.name for r in renditions]
        if len(names) != len(set(names)):
            raise ValueError("rendition names must be unique")
        return renditions

    @model_validator(mode="after")
    def viable_within_requested(self) -> "MediaProcessPayload":
        if self.min_viable_renditions is not None and self.min_viable_renditions > len(self.renditions):
            raise ValueError("min_viable_renditions exceeds the number of renditions")
        return self

    def fingerprint_fields(self) -> dict[str, Any]:
        """Fields that identify the same logical processing request."""
        return {
            "asset_key": self.asset_key,
            "renditions": sorted(r.name for r in self.renditions),
        }


class NotificationFanoutPayload(BaseModel):
    """Payload of notifications.fanout jobs."""

    model_config = ConfigDict(extra="forbid")

    event_id: str = Field(..., min_length=1, max_length=255)
    template: str = Field(..., min_length=1, max_length=128)
    recipient_ids: list[str] = Field(..., min_length=1, max_length=10_000)
    context: dict[str, Any] = Field(default_factory=dict)

    def fingerprint_fields(self) -> dict[str, Any]:
        return {"event_id": self.event_id, "template": self.template}


def validate_payload(model: type[BaseModel], payload: Any) -> Any:
    """
    Validate a raw payload against a job type's model.

    Raises:
        PayloadValidationError: With JSON-safe pydantic error details.
    """
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        errors = e.errors(include_url=False, include_context=False, include_input=False)
        raise PayloadValidationError(
            f"Invalid {model.__name__}: {e.error_count()} validation error(s)",
            errors=[{**error, "loc": list(error["loc"])} for error in errors],
        ) from e
