"""Supabase-backed user and experiment lookups."""

from dataclasses import dataclass
from uuid import UUID

from supabase import Client

from lab_feedback.adapters.supabase_queries import run_query
from lab_feedback.domain.models import ExperimentRecord, ParticipantRole, UserRecord
from lab_feedback.services.conversations import ExperimentRepository
from lab_feedback.services.users import UserRepository


@dataclass
class SupabaseUserRepository(UserRepository):
    """Supabase implementation for user reads."""

    client: Client

    def get_user(self, user_id: UUID) -> UserRecord | None:
        """Return the user with the given id, if present."""
        response = run_query(
            self.client.table("users")
            .select("id, email, role")
            .eq("id", str(user_id))
            .limit(1),
            "load user",
        )
        if not response.data:
            return None
        row = response.data[0]
        return UserRecord(
            id=UUID(row["id"]),
            email=row.get("email") or "",
            role=ParticipantRole(row["role"]),
        )


@dataclass
class SupabaseExperimentRepository(ExperimentRepository):
    """Supabase implementation for experiment reads."""

    client: Client

    def get_experiment(self, experiment_id: UUID) -> ExperimentRecord | None:
        """Return an experiment by id, if present."""
        response = run_query(
            self.client.table("experiments")
            .select("id, instructor_id, title")
            .eq("id", str(experiment_id))
            .limit(1),
            "load experiment",
        )
        if not response.data:
            return None
        row = response.data[0]
        instructor_id = row.get("instructor_id")
        return ExperimentRecord(
            id=UUID(row["id"]),
            instructor_id=UUID(instructor_id) if instructor_id else None,
            title=row.get("title") or "",
        )
