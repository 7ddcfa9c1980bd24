"""
Directory — users and their patient associations.

The surrounding platform owns users, family members and employee
assignments.  Chat only needs three things from it:
  - does this user exist, and are they active?
  - what is their role?
  - which patients are they associated with?

The directory document is JSON:

    {
      "users":       [{"id", "name", "role", "is_active"}],
      "family_links": [{"user_id", "patient_id"}],
      "assignments":  [{"employee_id", "patient_id", "is_active"}]
    }

Storage path (GCS mode): gs://{bucket}/chat_directory/directory.json
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from carechat.messaging.models import Role, User

logger = logging.getLogger("chat.directory")


class FamilyLink(BaseModel):
    user_id: str
    patient_id: str


class Assignment(BaseModel):
    employee_id: str
    patient_id: str
    is_active: bool = True


class DirectoryData(BaseModel):
    """Serialisable directory state."""

    users: list[User] = Field(default_factory=list)
    family_links: list[FamilyLink] = Field(default_factory=list)
    assignments: list[Assignment] = Field(default_factory=list)


class Directory:
    """
    In-process view of the platform's users and patient associations.

    Populated from a DirectoryData document (GCS blob or local seed file)
    or programmatically via add_user / link_family / assign_employee.
    """

    BLOB_PATH = "chat_directory/directory.json"

    def __init__(self, data: DirectoryData | None = None) -> None:
        self._users: dict[str, User] = {}
        self._family_patients: dict[str, set[str]] = {}
        self._employee_patients: dict[str, set[str]] = {}
        if data is not None:
            self._apply(data)

    # ── Loading ──

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Directory:
        return cls(DirectoryData.model_validate(raw))

    @classmethod
    def load(cls, *, gcs_bucket_manager=None, seed_path: str | None = None) -> Directory:
        """
        Build a directory from GCS if a bucket manager is given, else
        from a local seed file, else empty.
        """
        if gcs_bucket_manager is not None:
            content = gcs_bucket_manager.read_text(cls.BLOB_PATH)
            if content:
                directory = cls.from_dict(json.loads(content))
                logger.info("Loaded directory from GCS: %d users", directory.user_count)
                return directory
            logger.warning("No directory at gs://.../%s", cls.BLOB_PATH)

        if seed_path and Path(seed_path).is_file():
            raw = json.loads(Path(seed_path).read_text(encoding="utf-8"))
            directory = cls.from_dict(raw)
            logger.info(
                "Loaded directory from %s: %d users", seed_path, directory.user_count
            )
            return directory

        logger.info("Starting with an empty directory")
        return cls()

    def save(self, gcs_bucket_manager) -> None:
        """Publish the current directory document to GCS."""
        gcs_bucket_manager.write_text(
            self.BLOB_PATH, self.to_data().model_dump_json(indent=2)
        )

    def _apply(self, data: DirectoryData) -> None:
        for user in data.users:
            self.add_user(user)
        for link in data.family_links:
            self.link_family(link.user_id, link.patient_id)
        for assignment in data.assignments:
            if assignment.is_active:
                self.assign_employee(assignment.employee_id, assignment.patient_id)

    # ── Mutation ──

    def add_user(self, user: User) -> None:
        self._users[user.id] = user

    def link_family(self, user_id: str, patient_id: str) -> None:
        self._family_patients.setdefault(user_id, set()).add(patient_id)

    def assign_employee(self, employee_id: str, patient_id: str) -> None:
        self._employee_patients.setdefault(employee_id, set()).add(patient_id)

    def unassign_employee(self, employee_id: str, patient_id: str) -> None:
        self._employee_patients.get(employee_id, set()).discard(patient_id)

    # ── Lookup ──

    def get_user(self, user_id: str) -> User | None:
        return self._users.get(user_id)

    def get_active_user(self, user_id: str) -> User | None:
        user = self._users.get(user_id)
        if user is None or not user.is_active:
            return None
        return user

    def list_users(self) -> list[User]:
        return list(self._users.values())

    @property
    def user_count(self) -> int:
        return len(self._users)

    def patients_for(self, user: User) -> set[str]:
        """Patients a user is associated with.  Admins have none."""
        if user.role == Role.FAMILY:
            return set(self._family_patients.get(user.id, set()))
        if user.role == Role.EMPLOYEE:
            return set(self._employee_patients.get(user.id, set()))
        return set()

    def to_data(self) -> DirectoryData:
        return DirectoryData(
            users=self.list_users(),
            family_links=[
                FamilyLink(user_id=uid, patient_id=pid)
                for uid, pids in self._family_patients.items()
                for pid in sorted(pids)
            ],
            assignments=[
                Assignment(employee_id=eid, patient_id=pid)
                for eid, pids in self._employee_patients.items()
                for pid in sorted(pids)
            ],
        )
