"""Shared pytest fixtures for the moderation bot tests."""
import os
import sys
import tempfile
sys.dont_write_bytecode = True

# Keep the action log and settings away from the working directory
_tmp = tempfile.mkdtemp(prefix="moderador-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_tmp}/test.db")
os.environ.setdefault("SETTINGS_FILE", os.path.join(_tmp, "settings.json"))

from unittest.mock import AsyncMock  # noqa: E402

import pytest  # noqa: E402

from models import Chat, Contact, IncomingMessage, MessageCreated, Participant  # noqa: E402
from moderation import CommandDispatcher, DispatchPolicy, ModerationStore  # noqa: E402

GROUP_ID = "120363000000000001@g.us"
ADMIN = "5511900000001@c.us"
MEMBER = "5511900000002@c.us"
OTHER = "5511900000003@c.us"


class FakeSession:
    """ChatSession double: one chat, a contact book, and AsyncMock transport calls."""

    def __init__(self, chat, contacts=None):
        self.chat = chat
        self.contacts = contacts or {}
        self.get_chat = AsyncMock(side_effect=lambda chat_id: self.chat)
        self.get_contact = AsyncMock(side_effect=lambda cid: self.contacts.get(cid, Contact(id=cid)))
        self.delete_message = AsyncMock()
        self.reply = AsyncMock()
        self.send_message = AsyncMock()


def make_message(body, sender=MEMBER, chat_id=GROUP_ID, is_group=True, mentions=(), from_me=False, msg_id="MSG1", aliases=()):
    return MessageCreated(IncomingMessage(
        id=msg_id,
        chat_id=chat_id,
        sender_id=sender,
        body=body,
        is_group=is_group,
        from_me=from_me,
        mentioned_ids=tuple(mentions),
        sender_aliases=tuple(aliases),
    ))


@pytest.fixture
def group_chat():
    return Chat(
        id=GROUP_ID,
        name="Vecinos",
        is_group=True,
        participants=(
            Participant(ADMIN, is_admin=True),
            Participant(MEMBER),
            Participant(OTHER),
        ),
    )


@pytest.fixture
def session(group_chat):
    return FakeSession(group_chat, contacts={
        ADMIN: Contact(ADMIN, pushname="Ana"),
        MEMBER: Contact(MEMBER, verified_name="Bruno"),
        OTHER: Contact(OTHER, name="Carla"),
    })


@pytest.fixture
def store():
    return ModerationStore()


@pytest.fixture
def dispatcher(session, store):
    return CommandDispatcher(session, store, DispatchPolicy())
