"""Code detection service wrapping the external detector."""

import logging
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Protocol
from uuid import uuid4

from pydantic import ValidationError

from lab_feedback.config import development_base_urls
from lab_feedback.domain.detection import (
    DetectedCode,
    DetectionResult,
    DetectorCode,
    DetectorResponse,
    Point,
)
from lab_feedback.errors import (
    DetectorResponseMalformedError,
    DetectorUnavailableError,
    LabFeedbackError,
)

logger = logging.getLogger(__name__)

EXTERNAL_CONFIDENCE = 0.9


class DetectorClient(Protocol):
    """Interface for the remote detection endpoint."""

    async def detect_url(self, image_url: str) -> dict[str, object]:
        """Submit a public image URL and return the raw response body."""

    async def download(self, image_url: str, destination: Path) -> Path:
        """Stream an annotated image to ``destination`` and return it."""


@dataclass
class DetectionService:
    """Turns an uploaded file into a normalized detection result."""

    client: DetectorClient
    upload_dir: str
    public_base_url: str | None
    port: int
    production: bool = False

    async def analyze(self, image_locator: str, output_dir: Path) -> DetectionResult:
        """Run detection for a stored upload; never raises."""
        try:
            image_url = self.public_image_url(image_locator)
            logger.info("Sending image URL to detector: %s", image_url)
            raw = await self.client.detect_url(image_url)
            response = _parse_response(raw)
            codes = [convert_code(code) for code in response.detected_codes]
            processed_path: str | None = None
            if response.image_url:
                filename = PurePath(image_locator).name
                destination = output_dir / f"processed_{uuid4().hex}_{filename}"
                saved = await self.client.download(response.image_url, destination)
                processed_path = str(saved)
        except LabFeedbackError as exc:
            logger.warning(
                "Detection failed", extra={"image_locator": image_locator}
            )
            return DetectionResult(success=False, error=exc.message)
        except Exception as exc:
            logger.exception(
                "Unexpected detection error", extra={"image_locator": image_locator}
            )
            return DetectionResult(success=False, error=str(exc) or type(exc).__name__)

        readable = sum(1 for code in codes if code.readable)
        return DetectionResult(
            success=True,
            codes=codes,
            report=generate_report(len(codes), readable, len(codes) - readable),
            processed_image_path=processed_path,
        )

    def public_image_url(self, image_locator: str) -> str:
        """Build the URL the detector uses to fetch the upload."""
        base_url = self.resolve_base_url()
        upload_dir = self.upload_dir.removeprefix("./").strip("/")
        filename = PurePath(image_locator).name
        return f"{base_url}/{upload_dir}/{filename}"

    def resolve_base_url(self) -> str:
        """Return the configured base URL, or a development guess."""
        if self.public_base_url:
            return self.public_base_url
        if self.production:
            raise DetectorUnavailableError(
                "PUBLIC_BASE_URL must be configured in production"
            )
        candidates = development_base_urls(self.port)
        logger.warning(
            "No PUBLIC_BASE_URL configured, guessing %s from %s",
            candidates[0],
            candidates,
        )
        return candidates[0]


def convert_code(code: DetectorCode) -> DetectedCode:
    """Convert a detector bounding box into a four-point polygon."""
    x, y = code.position.x, code.position.y
    width, height = code.position.width, code.position.height
    return DetectedCode(
        data=code.data,
        points=[
            Point(x, y),
            Point(x + width, y),
            Point(x + width, y + height),
            Point(x, y + height),
        ],
        readable=bool(code.data.strip()),
        confidence=EXTERNAL_CONFIDENCE,
        detection_method=code.method or "3rd-party",
        preprocessing_type="external-service",
    )


def generate_report(total: int, readable: int, unreadable: int) -> str:
    """Build the student-facing summary for a detection run."""
    if total == 0:
        return (
            "Bot: No DataMatrix codes detected in your image. Please ensure your "
            "components are visible and try again with better lighting and focus."
        )
    if unreadable == 0:
        if total == 1:
            return (
                "Bot: The DataMatrix code on your component is readable! "
                "Please wait for the final report..."
            )
        return (
            f"Bot: All {total} DataMatrix codes on your components are readable! "
            "Please wait for the final report..."
        )

    ratio = readable / total
    percentage = round(ratio * 100)
    if ratio >= 0.75:
        verb = "is" if unreadable == 1 else "are"
        return (
            f"Bot: Found {total} components with DataMatrix codes. {readable} are "
            f"readable ({percentage}%), but {unreadable} {verb} not clear enough. "
            "Try improving the lighting or focus for the highlighted components."
        )
    if ratio >= 0.5:
        return (
            f"Bot: Found {total} components with DataMatrix codes. Only {readable} "
            f"out of {total} ({percentage}%) are readable. Please try again with "
            "better lighting and make sure all components are clearly visible."
        )
    return (
        f"Bot: Found {total} components, but most DataMatrix codes ({unreadable} "
        f"out of {total}) are not readable. Please take a new photo with better "
        "lighting, proper focus, and ensure all components are clearly visible."
    )


def _parse_response(raw: object) -> DetectorResponse:
    try:
        return DetectorResponse.model_validate(raw)
    except ValidationError as exc:
        raise DetectorResponseMalformedError(
            "Detector response did not match the expected schema "
            f"({exc.error_count()} errors)"
        ) from exc
