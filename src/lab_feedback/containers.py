"""Dependency container wiring for the application."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from supabase import create_client

from lab_feedback.adapters.detector_client import HttpxDetectorClient
from lab_feedback.adapters.supabase_conversation_repository import (
    SupabaseConversationRepository,
)
from lab_feedback.adapters.supabase_image_repository import SupabaseImageRepository
from lab_feedback.adapters.supabase_user_repository import (
    SupabaseExperimentRepository,
    SupabaseUserRepository,
)
from lab_feedback.config import Settings
from lab_feedback.realtime.gateway import ConversationGateway
from lab_feedback.realtime.manager import ConnectionManager
from lab_feedback.services.conversations import ConversationService
from lab_feedback.services.detection import DetectionService
from lab_feedback.services.images import ImageService
from lab_feedback.services.processing import ProcessingOrchestrator, ProcessingScheduler
from lab_feedback.services.users import UserService


@dataclass
class AppContainer:
    """Holds application-wide dependencies."""

    settings: Settings
    user_service: UserService
    conversation_service: ConversationService
    image_service: ImageService
    detection_service: DetectionService
    gateway: ConversationGateway
    scheduler: ProcessingScheduler
    close_resources: Callable[[], Awaitable[None]]


def build_container(settings: Settings | None = None) -> AppContainer:
    """Create the default dependency container."""
    resolved_settings = settings or Settings()
    supabase_client = create_client(
        resolved_settings.supabase_url, resolved_settings.supabase_service_key
    )
    experiment_repository = SupabaseExperimentRepository(supabase_client)
    user_service = UserService(
        SupabaseUserRepository(supabase_client),
        jwt_secret=resolved_settings.jwt_secret,
        jwt_algorithm=resolved_settings.jwt_algorithm,
    )
    conversation_service = ConversationService(
        SupabaseConversationRepository(supabase_client), experiment_repository
    )
    image_service = ImageService(
        SupabaseImageRepository(supabase_client), experiment_repository
    )
    detector_client = HttpxDetectorClient.create(
        resolved_settings.detector_base_url,
        timeout=resolved_settings.detector_timeout_seconds,
        download_timeout=resolved_settings.download_timeout_seconds,
    )
    detection_service = DetectionService(
        client=detector_client,
        upload_dir=resolved_settings.upload_dir,
        public_base_url=resolved_settings.public_base_url,
        port=resolved_settings.port,
        production=resolved_settings.is_production,
    )
    gateway = ConversationGateway(
        manager=ConnectionManager(),
        conversation_service=conversation_service,
        user_service=user_service,
    )
    scheduler = ProcessingScheduler(
        ProcessingOrchestrator(
            image_service=image_service,
            conversation_service=conversation_service,
            detection_service=detection_service,
            gateway=gateway,
            upload_dir=resolved_settings.upload_dir,
            processed_subdir=resolved_settings.processed_subdir,
            companion_resource_url=resolved_settings.companion_resource_url,
            legacy_processing_events=resolved_settings.legacy_processing_events,
        )
    )

    async def close_resources() -> None:
        await scheduler.drain()
        await detector_client.close()

    return AppContainer(
        settings=resolved_settings,
        user_service=user_service,
        conversation_service=conversation_service,
        image_service=image_service,
        detection_service=detection_service,
        gateway=gateway,
        scheduler=scheduler,
        close_resources=close_resources,
    )
