"""
Typed Metadata Contracts

Capture metadata extracted from uploaded media and payloads returned by
external providers are stored as JSON, but always through one of the
tagged variants below. Anything that does not fit a known variant lands
in the `other` case with its raw content preserved.
"""
from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError


# =============================================================================
# CAPTURE METADATA (EVIDENCE ITEMS)
# =============================================================================

class ExifMetadata(BaseModel):
    """Embedded EXIF block of a photo or screenshot."""
    kind: Literal["exif"] = "exif"
    captured_at: Optional[datetime] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    altitude: Optional[float] = None
    device: Optional[str] = None
    software: Optional[str] = None
    orientation: Optional[int] = None


class MediaContainerMetadata(BaseModel):
    """Container tags of an audio or video file."""
    kind: Literal["media"] = "media"
    captured_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    device: Optional[str] = None
    codec: Optional[str] = None


class OtherCaptureMetadata(BaseModel):
    """Unrecognized metadata shape, kept verbatim."""
    kind: Literal["other"] = "other"
    raw: Dict[str, Any] = Field(default_factory=dict)


CaptureMetadata = Annotated[
    Union[ExifMetadata, MediaContainerMetadata, OtherCaptureMetadata],
    Field(discriminator="kind"),
]

_capture_adapter = TypeAdapter(CaptureMetadata)


def parse_capture_metadata(raw: Optional[Dict[str, Any]]):
    """
    Parse client-supplied capture metadata into a tagged variant.

    Untagged or malformed blocks become OtherCaptureMetadata.
    """
    if not raw:
        return None
    if raw.get("kind") in ("exif", "media", "other"):
        try:
            return _capture_adapter.validate_python(raw)
        except ValidationError:
            return OtherCaptureMetadata(raw=raw)
    return OtherCaptureMetadata(raw=raw)


# =============================================================================
# PROVIDER PAYLOADS (AUDIT EVENT METADATA)
# =============================================================================

class TimeAuthorityPayload(BaseModel):
    kind: Literal["time_authority"] = "time_authority"
    authority: Optional[str] = None
    stamped: bool
    failures: Dict[str, str] = Field(default_factory=dict)


class NotaryPayload(BaseModel):
    kind: Literal["notary"] = "notary"
    calendar: Optional[str] = None
    status: str
    block_height: Optional[int] = None
    checks: Optional[int] = None


class BiometricPayload(BaseModel):
    kind: Literal["biometric"] = "biometric"
    liveness_session_id: Optional[str] = None
    liveness_status: Optional[str] = None
    liveness_confidence: Optional[float] = None
    similarity: Optional[float] = None
    outcome: Optional[str] = None


class DeliveryPayload(BaseModel):
    kind: Literal["delivery"] = "delivery"
    channel: str
    message_id: Optional[str] = None
    status: str
    error: Optional[str] = None


class OtherProviderPayload(BaseModel):
    kind: Literal["other"] = "other"
    raw: Dict[str, Any] = Field(default_factory=dict)


ProviderPayload = Annotated[
    Union[TimeAuthorityPayload, NotaryPayload, BiometricPayload, DeliveryPayload, OtherProviderPayload],
    Field(discriminator="kind"),
]

_provider_adapter = TypeAdapter(ProviderPayload)


def parse_provider_payload(raw: Dict[str, Any]):
    """Parse a stored provider payload back into its tagged variant."""
    try:
        return _provider_adapter.validate_python(raw)
    except ValidationError:
        return OtherProviderPayload(raw=raw)
