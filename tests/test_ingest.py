"""
Tests for event ingestion.

Tests cover:
- Chat naming rules (groups, newsletters, placeholders, push names)
- Disappearing-message timer inheritance
- Text, media-only, empty and payload-less events
- last_message_time never moving backwards
- Step tagging on storage failures
- Sent-message storage
- Ingestion metrics
"""

import base64

import pytest
from prometheus_client import REGISTRY

from conftest import at, make_chat

from chatstore.errors import InvalidInputError, TransientQueryError
from chatstore.events import JID, MessageEvent, MessageInfo
from chatstore.ingest import (
    create_message,
    derive_chat_name,
    resolve_ephemeral_expiration,
    resolve_last_message_time,
)
from chatstore.schemas import MessageFilter

USER_CHAT = "628111@s.whatsapp.net"
GROUP_CHAT = "12345@g.us"


def make_event(chat=USER_CHAT, sender=USER_CHAT, message_id="EV1", minutes=0,
               push_name="", message=None, is_from_me=False):
    return MessageEvent(
        info=MessageInfo(
            chat=JID.parse(chat),
            sender=JID.parse(sender),
            id=message_id,
            timestamp=at(minutes),
            is_from_me=is_from_me,
            push_name=push_name,
        ),
        message=message,
    )


def text_payload(text):
    return {"conversation": text}


def ingest_count(result):
    value = REGISTRY.get_sample_value("chatstore_ingest_events_total", {"result": result})
    return value or 0.0


class TestDeriveChatName:
    """Test the pure naming rules."""

    def test_group_label(self):
        assert derive_chat_name(None, JID.parse(GROUP_CHAT), "628111", "John") == "Group 12345"

    def test_newsletter_label(self):
        jid = JID.parse("987@newsletter")
        assert derive_chat_name(None, jid, "", "") == "Newsletter 987"

    def test_push_name_for_new_direct_chat(self):
        assert derive_chat_name(None, JID.parse(USER_CHAT), "628111", "John") == "John"

    def test_push_name_equal_to_identifier_is_ignored(self):
        assert derive_chat_name(None, JID.parse(USER_CHAT), "628999", "628111") == "628999"

    def test_fallback_to_sender_then_user(self):
        assert derive_chat_name(None, JID.parse(USER_CHAT), "628999", "") == "628999"
        assert derive_chat_name(None, JID.parse(USER_CHAT), "", "") == "628111"

    def test_placeholder_replaced_by_push_name(self):
        """A stored name that is just the bare identifier gives way to a push name."""
        assert derive_chat_name("628111", JID.parse(USER_CHAT), "628111", "John") == "John"

    def test_placeholder_matching_sender(self):
        assert derive_chat_name("628999", JID.parse(USER_CHAT), "628999", "Jane") == "Jane"

    def test_placeholder_kept_without_push_name(self):
        assert derive_chat_name("628111", JID.parse(USER_CHAT), "628111", "") == "628111"

    def test_real_name_is_kept(self):
        assert derive_chat_name("Johnny", JID.parse(USER_CHAT), "628111", "John") == "Johnny"

    def test_group_name_is_kept(self):
        assert derive_chat_name("Family", JID.parse(GROUP_CHAT), "628111", "John") == "Family"


class TestResolvers:
    """Test timer and timestamp merge rules."""

    def test_explicit_timer_wins(self):
        assert resolve_ephemeral_expiration(86400, make_chat(USER_CHAT, ephemeral=604800)) == 86400

    def test_timer_inherited(self):
        assert resolve_ephemeral_expiration(0, make_chat(USER_CHAT, ephemeral=604800)) == 604800

    def test_timer_defaults_to_zero(self):
        assert resolve_ephemeral_expiration(0, None) == 0

    def test_time_never_moves_backwards(self):
        existing = make_chat(USER_CHAT, minutes=10)
        assert resolve_last_message_time(at(5), existing) == at(10)
        assert resolve_last_message_time(at(15), existing) == at(15)

    def test_naive_timestamp_is_utc(self):
        assert resolve_last_message_time(at(5).replace(tzinfo=None), None) == at(5)


class TestCreateMessage:
    """Test ingestion against a real backend."""

    def test_text_message(self, repo):
        stored = repo.create_message(make_event(push_name="John", message=text_payload("hi there")))

        assert stored.content == "hi there"
        chat = repo.get_chat(USER_CHAT)
        assert chat.name == "John"
        assert chat.last_message_time == at(0)
        assert repo.get_message_by_id("EV1").sender == USER_CHAT

    def test_group_chat_named(self, repo):
        repo.create_message(make_event(chat=GROUP_CHAT, push_name="John", message=text_payload("hey")))
        assert repo.get_chat(GROUP_CHAT).name == "Group 12345"

    def test_placeholder_upgraded(self, repo):
        repo.store_chat(make_chat(USER_CHAT, "628111"))

        repo.create_message(make_event(push_name="John", message=text_payload("hi")))

        assert repo.get_chat(USER_CHAT).name == "John"

    def test_timer_inherited(self, repo):
        repo.store_chat(make_chat(USER_CHAT, "Alice", ephemeral=604800))

        repo.create_message(make_event(minutes=1, message=text_payload("hi")))

        assert repo.get_chat(USER_CHAT).ephemeral_expiration == 604800

    def test_timer_from_context_info(self, repo):
        payload = {"extendedTextMessage": {"text": "hi", "contextInfo": {"expiration": 86400}}}
        repo.create_message(make_event(message=payload))
        assert repo.get_chat(USER_CHAT).ephemeral_expiration == 86400

    def test_media_only_message_kept(self, repo):
        payload = {
            "imageMessage": {
                "url": "https://mmg.whatsapp.net/img.enc",
                "mediaKey": base64.b64encode(b"secret-key").decode(),
                "fileLength": "5120",
            }
        }
        repo.create_message(make_event(message=payload))

        stored = repo.get_message_by_id("EV1")
        assert stored.content == ""
        assert stored.media_type == "image"
        assert stored.media_key == b"secret-key"
        assert stored.file_length == 5120

    def test_empty_message_dropped(self, repo):
        """No text and no media: the chat is upserted, no message row."""
        result = repo.create_message(make_event(message={"reactionMessage": {"text": "👍"}}))

        assert result is None
        assert repo.get_chat(USER_CHAT) is not None
        assert repo.get_total_message_count() == 0

    def test_event_without_payload_is_noop(self, repo):
        assert repo.create_message(make_event(message=None)) is None
        assert repo.create_message(None) is None
        assert repo.get_total_chat_count() == 0

    def test_old_event_keeps_newer_time(self, repo):
        """History sync replaying an older event does not rewind the chat."""
        repo.create_message(make_event(message_id="new", minutes=10, message=text_payload("new")))
        repo.create_message(make_event(message_id="old", minutes=5, message=text_payload("old")))

        assert repo.get_chat(USER_CHAT).last_message_time == at(10)
        assert [m.id for m in repo.get_messages(MessageFilter(chat_jid=USER_CHAT))] == ["new", "old"]

    def test_reingest_is_idempotent(self, repo):
        event = make_event(message=text_payload("hi"))
        repo.create_message(event)
        repo.create_message(event)
        assert repo.get_total_message_count() == 1

    def test_malformed_length_still_stored(self, repo):
        """A bad fileLength is read as 0 and the message is kept."""
        repo.create_message(make_event(message={"imageMessage": {"caption": "pic", "fileLength": "12kb"}}))

        stored = repo.get_message_by_id("EV1")
        assert stored.media_type == "image"
        assert stored.file_length == 0

    def test_outcome_metrics(self, repo):
        stored_before = ingest_count("stored")
        empty_before = ingest_count("skipped_empty")
        none_before = ingest_count("no_payload")

        repo.create_message(make_event(message_id="a", message=text_payload("hi")))
        repo.create_message(make_event(message_id="b", message={}))
        repo.create_message(make_event(message_id="c"))

        assert ingest_count("stored") == stored_before + 1
        assert ingest_count("skipped_empty") == empty_before + 1
        assert ingest_count("no_payload") == none_before + 1


class FailingRepository:
    """Repository stand-in that fails on one named operation."""

    def __init__(self, failing):
        self.failing = failing
        self.calls = []

    def _maybe_fail(self, name):
        self.calls.append(name)
        if name == self.failing:
            raise TransientQueryError("backend went away")

    def get_chat(self, jid):
        self._maybe_fail("get_chat")
        return None

    def store_chat(self, chat):
        self._maybe_fail("store_chat")

    def store_message(self, message):
        self._maybe_fail("store_message")


class TestStepTagging:
    """Test that storage errors name the ingestion step that failed."""

    @pytest.mark.parametrize("failing,step", [
        ("get_chat", "get chat"),
        ("store_chat", "store chat"),
        ("store_message", "store message"),
    ])
    def test_step_in_error(self, failing, step):
        fake = FailingRepository(failing)

        with pytest.raises(TransientQueryError) as excinfo:
            create_message(fake, make_event(message=text_payload("hi")))

        assert excinfo.value.step == step
        assert str(excinfo.value) == f"{step} failed: backend went away"

    def test_store_message_not_reached_after_chat_failure(self):
        fake = FailingRepository("store_chat")
        with pytest.raises(TransientQueryError):
            create_message(fake, make_event(message=text_payload("hi")))
        assert fake.calls == ["get_chat", "store_chat"]


class TestStoreSentMessage:
    """Test storing messages sent by this account."""

    def test_creates_missing_chat(self, repo):
        stored = repo.store_sent_message_with_context("S1", "628000@s.whatsapp.net", USER_CHAT, "hello", at(3))

        assert stored.is_from_me is True
        chat = repo.get_chat(USER_CHAT)
        assert chat.name == "628111"
        assert chat.last_message_time == at(3)
        assert repo.get_message_by_id("S1").sender == "628000@s.whatsapp.net"

    def test_keeps_existing_chat_state(self, repo):
        repo.store_chat(make_chat(USER_CHAT, "Alice", minutes=10, ephemeral=86400))

        repo.store_sent_message_with_context("S1", "628000@s.whatsapp.net", USER_CHAT, "hello", at(3))

        chat = repo.get_chat(USER_CHAT)
        assert chat.name == "Alice"
        assert chat.last_message_time == at(10)
        assert chat.ephemeral_expiration == 86400

    def test_malformed_recipient_writes_nothing(self, repo):
        with pytest.raises(InvalidInputError):
            repo.store_sent_message_with_context("S1", "628000@s.whatsapp.net", "628111:x@s.whatsapp.net", "hello", at(3))
        assert repo.get_total_chat_count() == 0

    def test_empty_content_stores_nothing(self, repo):
        assert repo.store_sent_message_with_context("S1", "628000@s.whatsapp.net", USER_CHAT, "", at(3)) is None
        assert repo.get_total_chat_count() == 0


class TestChatNameWithPushName:
    """Test name resolution against stored chats."""

    def test_stored_placeholder(self, repo):
        repo.store_chat(make_chat(USER_CHAT, "628111"))
        name = repo.get_chat_name_with_push_name(JID.parse(USER_CHAT), USER_CHAT, "628111", "John")
        assert name == "John"

    def test_unknown_group(self, repo):
        name = repo.get_chat_name_with_push_name(JID.parse(GROUP_CHAT), GROUP_CHAT, "628111", "John")
        assert name == "Group 12345"
