"""HTTP client for the external code detection service."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path

import aiofiles
import httpx

from lab_feedback.errors import (
    DetectorResponseMalformedError,
    DetectorUnavailableError,
    DownloadFailureError,
)
from lab_feedback.services.detection import DetectorClient

logger = logging.getLogger(__name__)


@dataclass
class HttpxDetectorClient(DetectorClient):
    """Detector client implemented with httpx."""

    base_url: str
    http_client: httpx.AsyncClient
    timeout: float = 30.0
    download_timeout: float = 60.0

    @classmethod
    def create(
        cls, base_url: str, timeout: float = 30.0, download_timeout: float = 60.0
    ) -> "HttpxDetectorClient":
        """Create a detector client with a managed httpx session."""
        return cls(
            base_url=base_url.rstrip("/"),
            http_client=httpx.AsyncClient(),
            timeout=timeout,
            download_timeout=download_timeout,
        )

    async def detect_url(self, image_url: str) -> dict[str, object]:
        """Call ``POST /detect_url`` with the public image URL."""
        url = f"{self.base_url}/detect_url"
        try:
            response = await self.http_client.post(
                url, json={"url": image_url}, timeout=self.timeout
            )
        except httpx.TimeoutException as exc:
            raise DetectorUnavailableError(
                f"Detector did not respond within {self.timeout:g}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise DetectorUnavailableError(f"Detector request failed: {exc}") from exc

        if response.status_code != httpx.codes.OK:
            logger.error(
                "Detector returned %s: %s", response.status_code, response.text[:200]
            )
            raise DetectorUnavailableError(
                f"API returned status {response.status_code}"
            )
        try:
            payload = response.json()
        except json.JSONDecodeError as exc:
            raise DetectorResponseMalformedError(
                f"Failed to parse API response: {exc}"
            ) from exc
        if not isinstance(payload, dict):
            raise DetectorResponseMalformedError("API response is not a JSON object")
        logger.info("Detector response: %s codes detected", payload.get("count"))
        return payload

    async def download(self, image_url: str, destination: Path) -> Path:
        """Stream the annotated image from the detector to disk."""
        full_url = image_url
        if image_url.startswith("/"):
            full_url = f"{self.base_url}{image_url}"
        logger.info("Downloading processed image from %s", full_url)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            async with self.http_client.stream(
                "GET", full_url, timeout=self.download_timeout
            ) as response:
                if response.status_code != httpx.codes.OK:
                    raise DownloadFailureError(
                        "Failed to download processed image: "
                        f"{response.status_code}"
                    )
                async with aiofiles.open(destination, "wb") as handle:
                    async for chunk in response.aiter_bytes():
                        await handle.write(chunk)
        except DownloadFailureError:
            raise
        except (httpx.HTTPError, OSError) as exc:
            destination.unlink(missing_ok=True)
            raise DownloadFailureError(
                f"Failed to download processed image: {exc}"
            ) from exc
        logger.info("Processed image downloaded to %s", destination)
        return destination

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        await self.http_client.aclose()
