"""Shared test fixtures."""

import threading
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from uuid import UUID, uuid4

import pytest
from jose import jwt

from lab_feedback.config import Settings
from lab_feedback.containers import AppContainer
from lab_feedback.domain.conversations import (
    ConversationQuery,
    ConversationRecord,
    ConversationStatus,
    MessageRecord,
)
from lab_feedback.domain.images import ImageRecord, ProcessingStatus
from lab_feedback.domain.models import ExperimentRecord, ParticipantRole, UserRecord
from lab_feedback.realtime.gateway import ConversationGateway
from lab_feedback.realtime.manager import ConnectionManager
from lab_feedback.services.conversations import (
    ConversationRepository,
    ConversationService,
    ExperimentRepository,
)
from lab_feedback.services.detection import DetectionService, DetectorClient
from lab_feedback.services.images import ImageRepository, ImageService
from lab_feedback.services.processing import ProcessingOrchestrator, ProcessingScheduler
from lab_feedback.services.users import UserRepository, UserService

JWT_SECRET = "test-secret"


def issue_token(user_id: UUID, secret: str = JWT_SECRET) -> str:
    """Sign a token the way the auth service of the platform does."""
    return jwt.encode({"id": str(user_id)}, secret, algorithm="HS256")


@dataclass
class InMemoryUserRepository(UserRepository):
    """In-memory user repository for tests."""

    users: dict[UUID, UserRecord] = field(default_factory=dict)

    def add(self, role: ParticipantRole, email: str | None = None) -> UserRecord:
        user_id = uuid4()
        user = UserRecord(id=user_id, email=email or f"{user_id.hex[:8]}@lab.test", role=role)
        self.users[user.id] = user
        return user

    def get_user(self, user_id: UUID) -> UserRecord | None:
        return self.users.get(user_id)


@dataclass
class InMemoryExperimentRepository(ExperimentRepository):
    """In-memory experiment repository for tests."""

    experiments: dict[UUID, ExperimentRecord] = field(default_factory=dict)

    def add(
        self, instructor_id: UUID | None, title: str = "RC low-pass filter"
    ) -> ExperimentRecord:
        experiment = ExperimentRecord(id=uuid4(), instructor_id=instructor_id, title=title)
        self.experiments[experiment.id] = experiment
        return experiment

    def get_experiment(self, experiment_id: UUID) -> ExperimentRecord | None:
        return self.experiments.get(experiment_id)


@dataclass
class InMemoryConversationRepository(ConversationRepository):
    """In-memory conversation store keyed by (experiment, student)."""

    conversations: dict[UUID, ConversationRecord] = field(default_factory=dict)
    pairs: dict[tuple[UUID, UUID], UUID] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)
    fail_writes: bool = False

    def get_or_create(
        self,
        experiment_id: UUID,
        student_id: UUID,
        instructor_id: UUID | None,
        title: str,
    ) -> tuple[ConversationRecord, bool]:
        with self.lock:
            existing = self.pairs.get((experiment_id, student_id))
            if existing is not None:
                return self.conversations[existing], False
            conversation = ConversationRecord(
                id=uuid4(),
                experiment_id=experiment_id,
                student_id=student_id,
                instructor_id=instructor_id,
                title=title,
                status=ConversationStatus.ACTIVE,
                messages=[],
                last_message_at=None,
                last_message_by=None,
                unread_count=0,
                created_at=datetime.now(tz=UTC),
            )
            self.conversations[conversation.id] = conversation
            self.pairs[(experiment_id, student_id)] = conversation.id
            return conversation, True

    def get_conversation(self, conversation_id: UUID) -> ConversationRecord | None:
        return self.conversations.get(conversation_id)

    def add_message(
        self, conversation_id: UUID, message: MessageRecord, unread_count: int
    ) -> None:
        if self.fail_writes:
            raise RuntimeError("store unavailable")
        conversation = self.conversations[conversation_id]
        self.conversations[conversation_id] = replace(
            conversation,
            messages=[*conversation.messages, message],
            last_message_at=message.sent_at,
            last_message_by=message.sender_id,
            unread_count=unread_count,
        )

    def mark_messages_read(
        self, conversation_id: UUID, viewer_id: UUID, unread_count: int
    ) -> None:
        conversation = self.conversations[conversation_id]
        messages = [
            message if message.sender_id == viewer_id else replace(message, is_read=True)
            for message in conversation.messages
        ]
        self.conversations[conversation_id] = replace(
            conversation, messages=messages, unread_count=unread_count
        )

    def update_status(
        self, conversation_id: UUID, status: ConversationStatus
    ) -> ConversationRecord | None:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            return None
        updated = replace(conversation, status=status)
        self.conversations[conversation_id] = updated
        return updated

    def list_conversations(
        self,
        query: ConversationQuery,
        student_id: UUID | None = None,
        instructor_id: UUID | None = None,
    ) -> tuple[list[ConversationRecord], int]:
        matches = [
            conversation
            for conversation in self.conversations.values()
            if (student_id is None or conversation.student_id == student_id)
            and (instructor_id is None or conversation.instructor_id == instructor_id)
            and (query.status is None or conversation.status is query.status)
            and (
                query.experiment_id is None
                or conversation.experiment_id == query.experiment_id
            )
            and (
                not query.search
                or query.search.lower() in conversation.title.lower()
            )
        ]
        matches.sort(
            key=lambda conversation: conversation.last_message_at
            or conversation.created_at
            or datetime.min.replace(tzinfo=UTC),
            reverse=True,
        )
        start = (query.page - 1) * query.limit
        return matches[start : start + query.limit], len(matches)


@dataclass
class InMemoryImageRepository(ImageRepository):
    """In-memory image repository that keeps a status history."""

    images: dict[UUID, ImageRecord] = field(default_factory=dict)
    history: dict[UUID, list[ProcessingStatus]] = field(default_factory=dict)

    def create_image(
        self,
        experiment_id: UUID,
        owner_id: UUID,
        storage_locator: str,
        original_filename: str | None,
    ) -> ImageRecord:
        now = datetime.now(tz=UTC)
        image = ImageRecord(
            id=uuid4(),
            experiment_id=experiment_id,
            owner_id=owner_id,
            storage_locator=storage_locator,
            original_filename=original_filename,
            processing_status=ProcessingStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self.images[image.id] = image
        self.history[image.id] = [image.processing_status]
        return image

    def get_image(self, image_id: UUID) -> ImageRecord | None:
        return self.images.get(image_id)

    def update_image(self, image: ImageRecord) -> ImageRecord:
        stored = replace(image, updated_at=datetime.now(tz=UTC))
        self.images[image.id] = stored
        self.history.setdefault(image.id, []).append(stored.processing_status)
        return stored


@dataclass
class FakeDetectorClient(DetectorClient):
    """Fake detector returning a canned payload or raising."""

    payload: dict[str, object] = field(default_factory=dict)
    error: Exception | None = None
    image_bytes: bytes = b"annotated-image"
    submitted: list[str] = field(default_factory=list)
    downloads: list[tuple[str, Path]] = field(default_factory=list)

    async def detect_url(self, image_url: str) -> dict[str, object]:
        self.submitted.append(image_url)
        if self.error is not None:
            raise self.error
        return self.payload

    async def download(self, image_url: str, destination: Path) -> Path:
        self.downloads.append((image_url, destination))
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(self.image_bytes)
        return destination


@dataclass
class FakeConnection:
    """Realtime connection that records emitted events."""

    id: str = field(default_factory=lambda: uuid4().hex)
    events: list[tuple[str, object]] = field(default_factory=list)
    closed: tuple[int, str] | None = None
    broken: bool = False

    async def emit(self, event: str, data: object) -> None:
        if self.broken:
            raise ConnectionError("socket closed")
        self.events.append((event, data))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)

    def named(self, event: str) -> list[object]:
        return [data for name, data in self.events if name == event]


def detector_payload(*codes: tuple[str, int, int, int, int]) -> dict[str, object]:
    """Build a detector response from (data, x, y, width, height) tuples."""
    return {
        "count": len(codes),
        "detected_codes": [
            {
                "data": data,
                "method": "pylibdmtx",
                "type": "DataMatrix",
                "position": {"x": x, "y": y, "width": width, "height": height},
            }
            for data, x, y, width, height in codes
        ],
        "image_url": "/results/annotated.jpg",
        "source_url": "http://localhost:3000/uploads/board.jpg",
    }


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        supabase_url="https://example.supabase.co",
        supabase_service_key="service-key",
        jwt_secret=JWT_SECRET,
        public_base_url="https://lab.example.org",
        upload_dir=str(tmp_path / "uploads"),
        environment="test",
    )


@pytest.fixture
def user_repository() -> InMemoryUserRepository:
    return InMemoryUserRepository()


@pytest.fixture
def experiment_repository() -> InMemoryExperimentRepository:
    return InMemoryExperimentRepository()


@pytest.fixture
def conversation_repository() -> InMemoryConversationRepository:
    return InMemoryConversationRepository()


@pytest.fixture
def image_repository() -> InMemoryImageRepository:
    return InMemoryImageRepository()


@pytest.fixture
def detector_client() -> FakeDetectorClient:
    return FakeDetectorClient(payload=detector_payload(("R1-10k", 607, 145, 34, 26)))


@pytest.fixture
def student(user_repository: InMemoryUserRepository) -> UserRecord:
    return user_repository.add(ParticipantRole.STUDENT)


@pytest.fixture
def instructor(user_repository: InMemoryUserRepository) -> UserRecord:
    return user_repository.add(ParticipantRole.INSTRUCTOR)


@pytest.fixture
def admin(user_repository: InMemoryUserRepository) -> UserRecord:
    return user_repository.add(ParticipantRole.ADMIN)


@pytest.fixture
def experiment(
    experiment_repository: InMemoryExperimentRepository, instructor: UserRecord
) -> ExperimentRecord:
    return experiment_repository.add(instructor.id)


@pytest.fixture
def conversation_service(
    conversation_repository: InMemoryConversationRepository,
    experiment_repository: InMemoryExperimentRepository,
) -> ConversationService:
    return ConversationService(conversation_repository, experiment_repository)


@pytest.fixture
def image_service(
    image_repository: InMemoryImageRepository,
    experiment_repository: InMemoryExperimentRepository,
) -> ImageService:
    return ImageService(image_repository, experiment_repository)


@pytest.fixture
def user_service(user_repository: InMemoryUserRepository) -> UserService:
    return UserService(user_repository, jwt_secret=JWT_SECRET)


@pytest.fixture
def gateway(
    conversation_service: ConversationService, user_service: UserService
) -> ConversationGateway:
    return ConversationGateway(
        manager=ConnectionManager(),
        conversation_service=conversation_service,
        user_service=user_service,
    )


@pytest.fixture
def detection_service(
    settings: Settings, detector_client: FakeDetectorClient
) -> DetectionService:
    return DetectionService(
        client=detector_client,
        upload_dir=settings.upload_dir,
        public_base_url=settings.public_base_url,
        port=settings.port,
    )


@pytest.fixture
def orchestrator(
    settings: Settings,
    image_service: ImageService,
    conversation_service: ConversationService,
    detection_service: DetectionService,
    gateway: ConversationGateway,
) -> ProcessingOrchestrator:
    return ProcessingOrchestrator(
        image_service=image_service,
        conversation_service=conversation_service,
        detection_service=detection_service,
        gateway=gateway,
        upload_dir=settings.upload_dir,
        processed_subdir=settings.processed_subdir,
        companion_resource_url=settings.companion_resource_url,
        legacy_processing_events=settings.legacy_processing_events,
    )


@pytest.fixture
def container(
    settings: Settings,
    user_service: UserService,
    conversation_service: ConversationService,
    image_service: ImageService,
    detection_service: DetectionService,
    gateway: ConversationGateway,
    orchestrator: ProcessingOrchestrator,
) -> AppContainer:
    scheduler = ProcessingScheduler(orchestrator)

    async def close_resources() -> None:
        await scheduler.drain()

    return AppContainer(
        settings=settings,
        user_service=user_service,
        conversation_service=conversation_service,
        image_service=image_service,
        detection_service=detection_service,
        gateway=gateway,
        scheduler=scheduler,
        close_resources=close_resources,
    )
