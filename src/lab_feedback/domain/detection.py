"""Models for external code detection results."""

from dataclasses import dataclass, field

from pydantic import BaseModel, Field


class DetectorPosition(BaseModel):
    """Axis-aligned bounding box reported by the detector."""

    x: float
    y: float
    width: float = Field(ge=0)
    height: float = Field(ge=0)


class DetectorCode(BaseModel):
    """Single code as returned by the detection service."""

    data: str = ""
    method: str | None = None
    type: str | None = None
    position: DetectorPosition


class DetectorResponse(BaseModel):
    """Body of a successful ``/detect_url`` call."""

    count: int = 0
    detected_codes: list[DetectorCode] = Field(default_factory=list)
    image_url: str | None = None
    source_url: str | None = None


@dataclass(frozen=True)
class Point:
    """Polygon vertex in image pixel coordinates."""

    x: float
    y: float


@dataclass(frozen=True)
class DetectedCode:
    """Detected code converted to the internal polygon format."""

    data: str
    points: list[Point]
    readable: bool
    confidence: float
    detection_method: str
    preprocessing_type: str

    def to_dict(self) -> dict[str, object]:
        """Serialize for storage on the image record."""
        return {
            "data": self.data,
            "points": [{"x": point.x, "y": point.y} for point in self.points],
            "readable": self.readable,
            "confidence": self.confidence,
            "detectionMethod": self.detection_method,
            "preprocessingType": self.preprocessing_type,
        }


@dataclass(frozen=True)
class DetectionResult:
    """Normalized outcome of one detector run."""

    success: bool
    codes: list[DetectedCode] = field(default_factory=list)
    report: str | None = None
    processed_image_path: str | None = None
    error: str | None = None

    @property
    def total_codes(self) -> int:
        return len(self.codes)

    @property
    def readable_codes(self) -> int:
        return sum(1 for code in self.codes if code.readable)

    @property
    def unreadable_codes(self) -> int:
        return self.total_codes - self.readable_codes
