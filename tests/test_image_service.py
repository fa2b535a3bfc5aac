"""Tests for the image record store and status lattice."""

from uuid import uuid4

import pytest

from lab_feedback.domain.images import ProcessingStatus
from lab_feedback.domain.models import Identity, ParticipantRole
from lab_feedback.errors import (
    NotFoundError,
    PermissionDeniedError,
    ValidationFailureError,
)
from lab_feedback.services.images import serialize_image


@pytest.mark.parametrize(
    ("current", "target", "restart", "allowed"),
    [
        (ProcessingStatus.PENDING, ProcessingStatus.PROCESSING, False, True),
        (ProcessingStatus.PROCESSING, ProcessingStatus.COMPLETED, False, True),
        (ProcessingStatus.PROCESSING, ProcessingStatus.NEEDS_REVIEW, False, True),
        (ProcessingStatus.PROCESSING, ProcessingStatus.FAILED, False, True),
        (ProcessingStatus.COMPLETED, ProcessingStatus.PROCESSING, False, False),
        (ProcessingStatus.COMPLETED, ProcessingStatus.PROCESSING, True, True),
        (ProcessingStatus.FAILED, ProcessingStatus.PROCESSING, True, True),
        (ProcessingStatus.PENDING, ProcessingStatus.COMPLETED, False, False),
        (ProcessingStatus.COMPLETED, ProcessingStatus.PENDING, True, False),
        (ProcessingStatus.FAILED, ProcessingStatus.COMPLETED, False, False),
    ],
)
def test_status_lattice(current, target, restart, allowed) -> None:
    assert current.can_transition_to(target, restart=restart) is allowed


def test_register_upload_creates_pending_record(
    image_service, experiment, student
) -> None:
    image = image_service.register_upload(
        " uploads/board.jpg ", student.id, experiment.id, "board.jpg"
    )

    assert image.processing_status is ProcessingStatus.PENDING
    assert image.storage_locator == "uploads/board.jpg"
    assert serialize_image(image)["processingStatus"] == "pending"


def test_register_upload_validates_input(image_service, experiment, student) -> None:
    with pytest.raises(ValidationFailureError):
        image_service.register_upload("  ", student.id, experiment.id)
    with pytest.raises(NotFoundError):
        image_service.register_upload("uploads/a.jpg", student.id, uuid4())


def test_complete_picks_terminal_status(image_service, experiment, student) -> None:
    clean = image_service.begin_processing(
        image_service.register_upload("uploads/a.jpg", student.id, experiment.id)
    )
    blurry = image_service.begin_processing(
        image_service.register_upload("uploads/b.jpg", student.id, experiment.id)
    )

    clean = image_service.complete(clean, [], "Bot: ok", 0, "processed/a.jpg")
    blurry = image_service.complete(blurry, [], "Bot: blurry", 2, None)

    assert clean.processing_status is ProcessingStatus.COMPLETED
    assert clean.processed_image_locator == "processed/a.jpg"
    assert blurry.processing_status is ProcessingStatus.NEEDS_REVIEW


def test_illegal_transition_is_rejected(image_service, experiment, student) -> None:
    image = image_service.register_upload("uploads/a.jpg", student.id, experiment.id)

    with pytest.raises(ValidationFailureError):
        image_service.complete(image, [], "Bot: ok", 0, None)
    processing = image_service.begin_processing(image)
    with pytest.raises(ValidationFailureError):
        image_service.begin_processing(processing)


def test_force_fail_only_touches_non_terminal_records(
    image_service, image_repository, experiment, student
) -> None:
    stuck = image_service.begin_processing(
        image_service.register_upload("uploads/a.jpg", student.id, experiment.id)
    )
    done = image_service.complete(
        image_service.begin_processing(
            image_service.register_upload("uploads/b.jpg", student.id, experiment.id)
        ),
        [],
        "Bot: ok",
        0,
        None,
    )

    failed = image_service.force_fail(stuck.id, "Bot: boom")
    untouched = image_service.force_fail(done.id, "Bot: boom")

    assert failed is not None
    assert failed.processing_status is ProcessingStatus.FAILED
    assert failed.feedback == "Bot: boom"
    assert untouched is not None
    assert untouched.processing_status is ProcessingStatus.COMPLETED
    assert image_repository.history[done.id][-1] is ProcessingStatus.COMPLETED


def test_processing_status_view(image_service, experiment, student) -> None:
    image = image_service.register_upload("uploads/a.jpg", student.id, experiment.id)

    status = image_service.get_processing_status(image.id)

    assert status["imageId"] == str(image.id)
    assert status["status"] == "pending"
    assert status["detectedComponents"] == []
    assert status["lastUpdated"] is not None
    with pytest.raises(NotFoundError):
        image_service.get_processing_status(uuid4())


def test_access_rules(
    image_service, experiment, student, instructor, admin, user_repository
) -> None:
    image = image_service.register_upload("uploads/a.jpg", student.id, experiment.id)
    stranger = user_repository.add(ParticipantRole.STUDENT)
    other_instructor = user_repository.add(ParticipantRole.INSTRUCTOR)

    for user in (student, instructor, admin):
        image_service.ensure_can_access(
            image, Identity(user_id=user.id, email=user.email, role=user.role)
        )
    for user in (stranger, other_instructor):
        with pytest.raises(PermissionDeniedError):
            image_service.ensure_can_access(
                image, Identity(user_id=user.id, email=user.email, role=user.role)
            )
