"""
Shared fixtures for messaging component tests.

Everything runs in memory: MessageStore without a bucket manager (or over
FakeBucket for the GCS layout), a seeded Directory, and RecordingConnection
in place of a real WebSocket.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from google.api_core.exceptions import NotFound, PreconditionFailed

from carechat.messaging.connections import Connection
from carechat.messaging.directory import Directory
from carechat.messaging.errors import TransportError
from carechat.messaging.gateway import ConnectionGateway
from carechat.messaging.models import Role, User
from carechat.messaging.permissions import EligibilityChecker
from carechat.messaging.presence import PresenceRegistry
from carechat.messaging.router import MessageRouter
from carechat.messaging.store import MessageStore


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingConnection(Connection):
    """Connection that records every frame written to it."""

    def __init__(self, user_id: str = "", fail_sends: bool = False) -> None:
        super().__init__(user_id)
        self.sent: list[dict] = []
        self.closed = False
        self.close_code: int | None = None
        self.fail_sends = fail_sends

    @property
    def is_open(self) -> bool:
        return not self.closed

    async def send_text(self, text: str) -> None:
        if self.fail_sends:
            raise TransportError("socket is gone")
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        self.close_code = code

    def frames_of(self, frame_type: str) -> list[dict]:
        return [f for f in self.sent if f["type"] == frame_type]


class FakeBlob:
    def __init__(self, bucket, name):
        self._bucket = bucket
        self.name = name

    @property
    def generation(self):
        return self._bucket.generations.get(self.name, 0)

    def download_as_text(self, timeout=None):
        if self.name not in self._bucket.objects:
            raise NotFound(self.name)
        return self._bucket.objects[self.name]

    def upload_from_string(self, content, content_type=None, if_generation_match=None, timeout=None):
        if self._bucket.fail_index and "/index/" in self.name:
            raise RuntimeError("index write failed")
        if self._bucket.conflicts_remaining and self.name.endswith("conversation.json"):
            self._bucket.conflicts_remaining -= 1
            raise PreconditionFailed("conditionNotMet")
        if if_generation_match is not None and if_generation_match != self.generation:
            raise PreconditionFailed("conditionNotMet")
        self._bucket.objects[self.name] = content
        self._bucket.generations[self.name] = self.generation + 1


class FakeBucket:
    """Dict-backed bucket with GCS generation matching."""

    def __init__(self):
        self.objects: dict[str, str] = {}
        self.generations: dict[str, int] = {}
        self.conflicts_remaining = 0
        self.fail_index = False

    def blob(self, name):
        return FakeBlob(self, name)


def make_directory() -> Directory:
    """
    admin-1                       admin
    emp-1 (patient P1)            employee
    emp-2 (patient P2)            employee
    fam-1, fam-2 (patient P1)     family
    fam-3 (patient P2)            family
    emp-x                         employee, inactive
    """
    directory = Directory()
    directory.add_user(User(id="admin-1", name="Alice Admin", role=Role.ADMIN))
    directory.add_user(User(id="emp-1", name="Evan Carer", role=Role.EMPLOYEE))
    directory.add_user(User(id="emp-2", name="Erin Nurse", role=Role.EMPLOYEE))
    directory.add_user(User(id="fam-1", name="Fiona Family", role=Role.FAMILY))
    directory.add_user(User(id="fam-2", name="Frank Family", role=Role.FAMILY))
    directory.add_user(User(id="fam-3", name="Grace Family", role=Role.FAMILY))
    directory.add_user(User(id="emp-x", name="Xavier Gone", role=Role.EMPLOYEE, is_active=False))
    directory.assign_employee("emp-1", "P1")
    directory.assign_employee("emp-2", "P2")
    directory.assign_employee("emp-x", "P1")
    directory.link_family("fam-1", "P1")
    directory.link_family("fam-2", "P1")
    directory.link_family("fam-3", "P2")
    return directory


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def directory():
    return make_directory()


@pytest.fixture
def store(clock):
    return MessageStore(clock=clock)


@pytest.fixture
def bucket():
    return FakeBucket()


@pytest.fixture
def gcs_store(bucket, clock):
    gcs = MagicMock()
    gcs.bucket = bucket
    return MessageStore(gcs_bucket_manager=gcs, clock=clock)


@pytest.fixture
def presence():
    return PresenceRegistry()


@pytest.fixture
def router(store, presence, directory, clock):
    return MessageRouter(
        store=store,
        presence=presence,
        directory=directory,
        eligibility=EligibilityChecker(directory),
        clock=clock,
    )


@pytest.fixture
def gateway(presence, router, directory):
    return ConnectionGateway(presence=presence, router=router, directory=directory)
