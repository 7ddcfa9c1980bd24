"""
Tests for the Message Router.

Covers:
  - send: persistence, live push, sender ack, offline recipients
  - server-side eligibility on send and history
  - fetch ordering and idempotence
  - the soft-delete window, including concurrent deletes
  - available peers, admin review, system notifications
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from carechat import settings
from carechat.messaging.errors import (
    AuthorizationError,
    DeleteNotAllowedError,
    EligibilityError,
    MessageNotFoundError,
    PersistenceError,
)
from carechat.messaging.models import ImageBody, Message, MessageKind, Role, User
from carechat.messaging.permissions import EligibilityChecker
from carechat.messaging.router import MessageRouter
from carechat.messaging.tests.conftest import RecordingConnection


def _system_user() -> User:
    """The notification sender as setup registers it: present but unable to sign in."""
    return User(id=settings.SYSTEM_USER_ID, name="System", role=Role.ADMIN, is_active=False)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Send
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestSend:

    @pytest.mark.asyncio
    async def test_send_then_fetch_has_exactly_one_new_message(self, router, clock):
        call_time = clock.now
        before = await router.fetch_conversation("emp-1", "fam-1")

        msg = await router.send("emp-1", "fam-1", "Medication given at 9am")

        after = await router.fetch_conversation("emp-1", "fam-1")
        new = [m for m in after if m.id not in {b.id for b in before}]
        assert len(new) == 1
        assert new[0].message == "Medication given at 9am"
        assert new[0].id == msg.id
        assert new[0].created_at >= call_time

    @pytest.mark.asyncio
    async def test_online_recipient_gets_push_and_sender_gets_ack(self, router, presence):
        sender, receiver = RecordingConnection("emp-1"), RecordingConnection("fam-1")
        presence.register("emp-1", sender)
        presence.register("fam-1", receiver)

        msg = await router.send("emp-1", "fam-1", "Hello")

        assert receiver.frames_of("chat")[0]["message"]["id"] == msg.id
        assert sender.frames_of("chat_sent")[0]["message"]["id"] == msg.id
        assert sender.frames_of("chat") == []

    @pytest.mark.asyncio
    async def test_offline_recipient_is_not_an_error(self, router, presence):
        sender = RecordingConnection("emp-1")
        presence.register("emp-1", sender)

        msg = await router.send("emp-1", "fam-1", "Hello")

        assert len(sender.frames_of("chat_sent")) == 1
        history = await router.fetch_conversation("fam-1", "emp-1")
        assert [m.id for m in history] == [msg.id]

    @pytest.mark.asyncio
    async def test_ack_goes_to_origin_connection(self, router, presence):
        current, origin = RecordingConnection("emp-1"), RecordingConnection("emp-1")
        presence.register("emp-1", current)

        await router.send("emp-1", "fam-1", "Hi", origin=origin)

        assert len(origin.frames_of("chat_sent")) == 1
        assert current.sent == []

    @pytest.mark.asyncio
    async def test_dead_recipient_connection_is_swallowed_and_unregistered(self, router, presence):
        dead = RecordingConnection("fam-1", fail_sends=True)
        presence.register("fam-1", dead)

        msg = await router.send("emp-1", "fam-1", "Are you there?")

        assert presence.lookup("fam-1") is None
        assert [m.id for m in await router.fetch_conversation("emp-1", "fam-1")] == [msg.id]

    @pytest.mark.asyncio
    async def test_image_message(self, router):
        msg = await router.send(
            "emp-1", "fam-1", image=ImageBody(description="Lunch plate")
        )
        assert msg.message_type == MessageKind.IMAGE
        assert msg.message == "[Image]: Lunch plate"

    @pytest.mark.asyncio
    async def test_kind_accepts_string(self, router):
        msg = await router.send("emp-1", "fam-1", "[Image]: wound photo", "image")
        assert msg.message_type == MessageKind.IMAGE

    @pytest.mark.asyncio
    async def test_long_message_truncated(self, router):
        msg = await router.send("emp-1", "fam-1", "x" * (settings.MAX_MESSAGE_LENGTH + 50))
        assert len(msg.message) == settings.MAX_MESSAGE_LENGTH

    @pytest.mark.asyncio
    @pytest.mark.parametrize("sender,receiver,text", [
        ("", "fam-1", "hi"),
        ("emp-1", "", "hi"),
        ("emp-1", "fam-1", ""),
        ("emp-1", "fam-1", "   "),
    ])
    async def test_invalid_requests(self, router, sender, receiver, text):
        with pytest.raises(ValueError):
            await router.send(sender, receiver, text)

    @pytest.mark.asyncio
    async def test_unknown_kind(self, router):
        with pytest.raises(ValueError):
            await router.send("emp-1", "fam-1", "hi", "video")


class TestSendEligibility:

    @pytest.mark.asyncio
    async def test_ineligible_pair_is_rejected_and_nothing_stored(self, router, presence):
        receiver = RecordingConnection("fam-3")
        presence.register("fam-3", receiver)

        with pytest.raises(EligibilityError) as exc_info:
            await router.send("fam-1", "fam-3", "Hi stranger")

        assert exc_info.value.reason == "no_shared_patient"
        assert await router.fetch_conversation("fam-1", "fam-3") == []
        assert receiver.sent == []

    @pytest.mark.asyncio
    async def test_unknown_receiver_rejected(self, router):
        with pytest.raises(EligibilityError):
            await router.send("emp-1", "ghost", "hello?")

    @pytest.mark.asyncio
    async def test_inactive_sender_rejected(self, router):
        with pytest.raises(EligibilityError):
            await router.send("emp-x", "fam-1", "still here")


class TestSendPersistenceFailure:

    @pytest.mark.asyncio
    async def test_store_failure_fails_send_and_delivers_nothing(self, router, store, presence):
        sender, receiver = RecordingConnection("emp-1"), RecordingConnection("fam-1")
        presence.register("emp-1", sender)
        presence.register("fam-1", receiver)
        store.append = AsyncMock(side_effect=PersistenceError("store down"))

        with pytest.raises(PersistenceError):
            await router.send("emp-1", "fam-1", "Hello")

        assert sender.sent == []
        assert receiver.sent == []


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Fetch
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestFetch:

    @pytest.mark.asyncio
    async def test_ordering_follows_persistence(self, router, clock):
        m1 = await router.send("emp-1", "fam-1", "first")
        clock.advance(1)
        m2 = await router.send("fam-1", "emp-1", "second")
        m3 = await router.send("emp-1", "fam-1", "third")

        history = await router.fetch_conversation("fam-1", "emp-1")
        assert [m.id for m in history] == [m1.id, m2.id, m3.id]

    @pytest.mark.asyncio
    async def test_fetch_is_idempotent(self, router):
        await router.send("emp-1", "fam-1", "a")
        await router.send("fam-1", "emp-1", "b")

        first = await router.fetch_conversation("emp-1", "fam-1")
        second = await router.fetch_conversation("emp-1", "fam-1")
        assert first == second

    @pytest.mark.asyncio
    async def test_conversations_are_isolated(self, router):
        await router.send("emp-1", "fam-1", "to fam-1")
        await router.send("emp-1", "fam-2", "to fam-2")
        history = await router.fetch_conversation("emp-1", "fam-1")
        assert [m.message for m in history] == ["to fam-1"]

    @pytest.mark.asyncio
    async def test_fetch_history_checks_eligibility(self, router):
        await router.send("emp-1", "fam-1", "hello")
        assert len(await router.fetch_history("fam-1", "emp-1")) == 1
        with pytest.raises(EligibilityError):
            await router.fetch_history("fam-3", "emp-1")

    @pytest.mark.asyncio
    async def test_admin_review(self, router):
        await router.send("emp-1", "fam-1", "hello")
        reviewed = await router.review_conversation("admin-1", "fam-1", "emp-1")
        assert [m.message for m in reviewed] == ["hello"]

    @pytest.mark.asyncio
    async def test_review_requires_admin(self, router):
        with pytest.raises(AuthorizationError):
            await router.review_conversation("emp-2", "fam-1", "emp-1")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Soft delete
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestSoftDelete:

    @pytest.mark.asyncio
    async def test_delete_within_window(self, router, clock):
        msg = await router.send("emp-1", "fam-1", "Wrong patient, sorry")
        clock.advance(60)

        deleted = await router.soft_delete(msg.id, "emp-1")

        assert deleted.is_deleted is True
        assert deleted.id == msg.id
        assert await router.fetch_conversation("emp-1", "fam-1") == []

    @pytest.mark.asyncio
    async def test_delete_after_window_fails(self, router, clock):
        msg = await router.send("emp-1", "fam-1", "Too late to take back")
        clock.advance(121)

        with pytest.raises(DeleteNotAllowedError) as exc_info:
            await router.soft_delete(msg.id, "emp-1")

        assert exc_info.value.reason == "window_expired"
        assert [m.id for m in await router.fetch_conversation("emp-1", "fam-1")] == [msg.id]

    @pytest.mark.asyncio
    async def test_window_boundary_is_exclusive(self, router, clock):
        msg = await router.send("emp-1", "fam-1", "boundary")
        clock.advance(120)
        with pytest.raises(DeleteNotAllowedError):
            await router.soft_delete(msg.id, "emp-1")

    @pytest.mark.asyncio
    async def test_only_sender_can_delete(self, router):
        msg = await router.send("emp-1", "fam-1", "mine")
        with pytest.raises(DeleteNotAllowedError) as exc_info:
            await router.soft_delete(msg.id, "fam-1")
        assert exc_info.value.reason == "not_sender"

    @pytest.mark.asyncio
    async def test_cannot_delete_twice(self, router):
        msg = await router.send("emp-1", "fam-1", "once")
        await router.soft_delete(msg.id, "emp-1")
        with pytest.raises(DeleteNotAllowedError) as exc_info:
            await router.soft_delete(msg.id, "emp-1")
        assert exc_info.value.reason == "already_deleted"

    @pytest.mark.asyncio
    async def test_unknown_message(self, router):
        with pytest.raises(MessageNotFoundError):
            await router.soft_delete("does-not-exist", "emp-1")

    @pytest.mark.asyncio
    async def test_deleted_id_is_not_reused(self, router, store):
        msg = await router.send("emp-1", "fam-1", "gone")
        await router.soft_delete(msg.id, "emp-1")
        replacement = await router.send("emp-1", "fam-1", "new")
        assert replacement.id != msg.id
        assert (await store.get(msg.id)).is_deleted is True

    @pytest.mark.asyncio
    async def test_concurrent_deletes_in_memory(self, router):
        msg = await router.send("emp-1", "fam-1", "double tap")
        results = await asyncio.gather(
            router.soft_delete(msg.id, "emp-1"),
            router.soft_delete(msg.id, "emp-1"),
            return_exceptions=True,
        )
        assert sum(isinstance(r, Message) for r in results) == 1
        refused = [r for r in results if isinstance(r, DeleteNotAllowedError)]
        assert [r.reason for r in refused] == ["already_deleted"]

    @pytest.mark.asyncio
    async def test_concurrent_deletes_on_gcs(self, gcs_store, presence, directory, clock):
        router = MessageRouter(
            store=gcs_store,
            presence=presence,
            directory=directory,
            eligibility=EligibilityChecker(directory),
            clock=clock,
        )
        msg = await router.send("emp-1", "fam-1", "double tap")

        results = await asyncio.gather(
            router.soft_delete(msg.id, "emp-1"),
            router.soft_delete(msg.id, "emp-1"),
            return_exceptions=True,
        )

        assert sum(isinstance(r, Message) for r in results) == 1
        refused = [r for r in results if isinstance(r, DeleteNotAllowedError)]
        assert [r.reason for r in refused] == ["already_deleted"]
        stored = await gcs_store.fetch_pair("emp-1", "fam-1", include_deleted=True)
        assert [m.is_deleted for m in stored] == [True]

    @pytest.mark.asyncio
    async def test_window_is_checked_against_stored_row_on_gcs(
        self, gcs_store, presence, directory, clock
    ):
        router = MessageRouter(
            store=gcs_store, presence=presence, directory=directory, clock=clock
        )
        msg = await router.send("emp-1", "fam-1", "late")
        clock.advance(121)
        with pytest.raises(DeleteNotAllowedError) as exc_info:
            await router.soft_delete(msg.id, "emp-1")
        assert exc_info.value.reason == "window_expired"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Peers and notifications
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestPeers:

    def test_available_peers_sorted_with_presence(self, router, presence):
        presence.register("emp-1", RecordingConnection("emp-1"))
        peers = router.available_peers("fam-1")
        assert [p.id for p in peers] == ["admin-1", "emp-1", "fam-2"]
        online = {p.id: p.is_online for p in peers}
        assert online == {"admin-1": False, "emp-1": True, "fam-2": False}

    def test_unknown_user_has_no_peers(self, router):
        assert router.available_peers("ghost") == []

    def test_system_user_is_hidden(self, router, directory):
        directory.add_user(_system_user())
        ids = [p.id for p in router.available_peers("fam-1")]
        assert settings.SYSTEM_USER_ID not in ids


class TestNotify:

    @pytest.mark.asyncio
    async def test_notification_from_system_user(self, router, directory, presence):
        directory.add_user(_system_user())
        receiver = RecordingConnection("fam-3")
        presence.register("fam-3", receiver)

        msg = await router.notify("fam-3", "Your visit schedule changed")

        assert msg.sender_id == settings.SYSTEM_USER_ID
        assert receiver.frames_of("chat")[0]["message"]["message"] == "Your visit schedule changed"

    @pytest.mark.asyncio
    async def test_recipient_reads_notifications(self, router, directory):
        directory.add_user(_system_user())
        await router.notify("fam-3", "Visit moved to 3pm")

        history = await router.fetch_history("fam-3", settings.SYSTEM_USER_ID)

        assert [m.message for m in history] == ["Visit moved to 3pm"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("receiver", ["ghost", "emp-x"])
    async def test_notify_needs_active_recipient(self, router, directory, receiver):
        directory.add_user(_system_user())
        with pytest.raises(EligibilityError) as exc_info:
            await router.notify(receiver, "hello")
        assert exc_info.value.reason == "unknown_user"
        assert await router.fetch_conversation(settings.SYSTEM_USER_ID, receiver) == []

    @pytest.mark.asyncio
    async def test_system_user_cannot_send(self, router, directory):
        directory.add_user(_system_user())
        with pytest.raises(EligibilityError):
            await router.send(settings.SYSTEM_USER_ID, "fam-1", "spoofed")
