"""Image analysis pipeline: detection, status updates and bot feedback."""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path, PurePath
from uuid import UUID

from lab_feedback.domain.conversations import ConversationRecord, MessageType
from lab_feedback.domain.detection import DetectionResult
from lab_feedback.domain.images import ImageRecord, ProcessingStatus
from lab_feedback.errors import ValidationFailureError
from lab_feedback.realtime.gateway import ConversationGateway
from lab_feedback.services.conversations import ConversationService
from lab_feedback.services.detection import DetectionService
from lab_feedback.services.images import ImageService

logger = logging.getLogger(__name__)

UNEXPECTED_FAILURE_NOTE = "Bot: An unexpected error occurred during processing."

PHOTO_TIPS = (
    "Bot: Some codes could not be read. Tips for your next photo:\n"
    "- Use even, diffuse lighting and avoid glare on the components.\n"
    "- Hold the camera parallel to the breadboard and keep it steady.\n"
    "- Move closer so each code fills more of the frame, then refocus.\n"
    "- Make sure no wires or fingers cover the printed codes."
)


@dataclass
class ProcessingOrchestrator:
    """Drives one image from ``pending`` to a terminal status."""

    image_service: ImageService
    conversation_service: ConversationService
    detection_service: DetectionService
    gateway: ConversationGateway
    upload_dir: str
    processed_subdir: str = "processed"
    companion_resource_url: str | None = None
    legacy_processing_events: bool = True

    @property
    def output_dir(self) -> Path:
        return Path(self.upload_dir) / self.processed_subdir

    async def process_image(self, image_id: UUID, restart: bool = False) -> None:
        """Run the full pipeline for one image; never raises."""
        conversation: ConversationRecord | None = None
        try:
            image = self.image_service.get_image(image_id)
            if image is None:
                logger.error("Image %s not found", image_id)
                return
            try:
                image = self.image_service.begin_processing(image, restart=restart)
            except ValidationFailureError as exc:
                logger.warning("Skipping image %s: %s", image_id, exc.message)
                return

            await self._legacy_update(
                image.owner_id,
                {
                    "imageId": str(image_id),
                    "status": str(ProcessingStatus.PROCESSING),
                    "message": "Bot: Starting Matrix code analysis...",
                },
            )

            conversation = self.conversation_service.get_or_create(
                image.experiment_id, image.owner_id
            )
            await self._push(
                conversation.id,
                "Bot: I received your circuit photo and started analyzing the "
                "DataMatrix codes on your components.",
                MessageType.SYSTEM,
                {"stage": "started", "imageId": str(image_id)},
                image_id,
            )

            result = await self.detection_service.analyze(
                image.storage_locator, self.output_dir
            )
            if result.success:
                await self._handle_success(image, conversation, result)
            else:
                await self._handle_failure(image, conversation, result)
        except Exception as exc:
            logger.exception("Error processing image %s", image_id)
            await self._recover(image_id, conversation, exc)

    async def _handle_success(
        self,
        image: ImageRecord,
        conversation: ConversationRecord,
        result: DetectionResult,
    ) -> None:
        image = self.image_service.complete(
            image,
            detected_components=[code.to_dict() for code in result.codes],
            feedback=result.report or "",
            unreadable_codes=result.unreadable_codes,
            processed_image_locator=result.processed_image_path,
        )
        counts = {
            "totalCodes": result.total_codes,
            "readableCodes": result.readable_codes,
            "unreadableCodes": result.unreadable_codes,
        }
        await self._push(
            conversation.id,
            format_feedback(image, result),
            MessageType.FEEDBACK,
            {
                "stage": "completed",
                "imageId": str(image.id),
                **counts,
                "processedImageUrl": result.processed_image_path,
            },
            image.id,
        )
        if result.unreadable_codes:
            await self._push(
                conversation.id,
                PHOTO_TIPS,
                MessageType.SYSTEM,
                {"stage": "guidance", "imageId": str(image.id)},
                image.id,
            )
        if self.companion_resource_url:
            await self._push(
                conversation.id,
                "Bot: For a step-by-step walkthrough of your circuit, visit "
                f"{self.companion_resource_url}",
                MessageType.SYSTEM,
                {"stage": "resources", "url": self.companion_resource_url},
                image.id,
            )
        await self._legacy_complete(
            image.owner_id,
            {
                "imageId": str(image.id),
                "status": str(image.processing_status),
                "message": result.report,
                **counts,
                "processedImageUrl": result.processed_image_path,
            },
        )
        logger.info(
            "Processed image %s: %s codes detected",
            image.id,
            result.total_codes,
            extra={"image_id": image.id},
        )

    async def _handle_failure(
        self,
        image: ImageRecord,
        conversation: ConversationRecord,
        result: DetectionResult,
    ) -> None:
        note = f"Bot: Processing failed - {result.error}"
        image = self.image_service.fail(image, note)
        await self._push(
            conversation.id,
            f"{note}. Please try uploading the photo again.",
            MessageType.SYSTEM,
            {"stage": "failed", "imageId": str(image.id), "error": result.error},
            image.id,
        )
        await self._legacy_complete(
            image.owner_id,
            {
                "imageId": str(image.id),
                "status": str(ProcessingStatus.FAILED),
                "message": note,
                "error": result.error,
            },
        )
        logger.error("Failed to process image %s: %s", image.id, result.error)

    async def _recover(
        self,
        image_id: UUID,
        conversation: ConversationRecord | None,
        error: Exception,
    ) -> None:
        try:
            image = self.image_service.force_fail(image_id, UNEXPECTED_FAILURE_NOTE)
        except Exception:
            logger.exception("Failed to update image %s after error", image_id)
            return
        if image is None:
            return
        if conversation is None:
            conversation = self._existing_conversation(image)
        if conversation is not None:
            await self._push(
                conversation.id,
                UNEXPECTED_FAILURE_NOTE,
                MessageType.SYSTEM,
                {"stage": "failed", "imageId": str(image_id)},
                image_id,
            )
        await self._legacy_complete(
            image.owner_id,
            {
                "imageId": str(image_id),
                "status": str(image.processing_status),
                "message": UNEXPECTED_FAILURE_NOTE,
                "error": str(error),
            },
        )

    def _existing_conversation(self, image: ImageRecord) -> ConversationRecord | None:
        try:
            return self.conversation_service.find(image.experiment_id, image.owner_id)
        except Exception:
            logger.exception("Conversation lookup for image %s failed", image.id)
            return None

    async def _push(
        self,
        conversation_id: UUID,
        content: str,
        message_type: MessageType,
        metadata: dict[str, object],
        image_id: UUID,
    ) -> None:
        try:
            await self.gateway.send_bot_message(
                conversation_id,
                content,
                message_type=message_type,
                metadata=metadata,
                related_image_id=image_id,
            )
        except Exception:
            logger.exception(
                "Bot message to conversation %s failed",
                conversation_id,
                extra={"image_id": image_id},
            )

    async def _legacy_update(self, user_id: UUID, payload: dict[str, object]) -> None:
        if self.legacy_processing_events:
            await self.gateway.send_processing_update(user_id, payload)

    async def _legacy_complete(self, user_id: UUID, payload: dict[str, object]) -> None:
        if self.legacy_processing_events:
            await self.gateway.send_processing_complete(user_id, payload)


def format_feedback(image: ImageRecord, result: DetectionResult) -> str:
    """Render the detailed feedback message for a finished run."""
    name = image.original_filename or PurePath(image.storage_locator).name
    lines = [
        f"Bot: Analysis of {name} finished.",
        f"Detected codes: {result.total_codes} "
        f"(readable: {result.readable_codes}, unreadable: {result.unreadable_codes})",
    ]
    for index, code in enumerate(result.codes, start=1):
        if code.readable:
            lines.append(f"- Code {index}: readable ({code.data})")
        else:
            lines.append(f"- Code {index}: not readable")
    if result.report:
        lines.extend(["", result.report])
    return "\n".join(lines)


@dataclass
class ProcessingScheduler:
    """Runs orchestrator jobs as detached tasks on the current loop."""

    orchestrator: ProcessingOrchestrator
    tasks: set[asyncio.Task[None]] = field(default_factory=set)

    def schedule(self, image_id: UUID, restart: bool = False) -> asyncio.Task[None]:
        """Start a run without waiting for it."""
        task = asyncio.create_task(
            self.orchestrator.process_image(image_id, restart=restart),
            name=f"process-image-{image_id}",
        )
        self.tasks.add(task)
        task.add_done_callback(self._cleanup_task)
        logger.info("Scheduled processing for image %s", image_id)
        return task

    def trigger_processing(self, image_id: UUID) -> None:
        """Queue a freshly uploaded image."""
        self.schedule(image_id)

    def reprocess(self, image_id: UUID) -> None:
        """Queue a fresh run that restarts at ``processing``."""
        self.schedule(image_id, restart=True)

    async def drain(self) -> None:
        """Wait for every in-flight run to settle."""
        while self.tasks:
            await asyncio.gather(*list(self.tasks), return_exceptions=True)

    def _cleanup_task(self, task: asyncio.Task[None]) -> None:
        self.tasks.discard(task)
        if task.cancelled():
            logger.warning("Processing task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Queued processing failed for %s", task.get_name(), exc_info=exc
            )
