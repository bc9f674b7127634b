"""Domain types passed between the WPPConnect layer and the command dispatcher."""
from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence, Tuple, Union


def user_part(contact_id: str) -> str:
    """'5511999999999@c.us' -> '5511999999999'"""
    return contact_id.split('@')[0]


@dataclass(frozen=True)
class Participant:
    id: str
    is_admin: bool = False
    is_super_admin: bool = False

    @property
    def user(self) -> str:
        return user_part(self.id)


@dataclass(frozen=True)
class Chat:
    id: str
    name: str = ""
    is_group: bool = False
    participants: Tuple[Participant, ...] = ()

    def participant(self, *participant_ids: str) -> Optional[Participant]:
        """First participant matching any of the ids, compared by number part."""
        wanted = {user_part(pid) for pid in participant_ids}
        for p in self.participants:
            if p.user in wanted:
                return p
        return None


@dataclass(frozen=True)
class Contact:
    id: str
    pushname: str = ""
    verified_name: str = ""
    name: str = ""

    @property
    def user(self) -> str:
        return user_part(self.id)

    def display_name(self, default: str = "") -> str:
        return self.pushname or self.verified_name or self.name or default


@dataclass(frozen=True)
class IncomingMessage:
    """A message as received. Mentions are ids only; contacts are resolved on demand."""
    id: str
    chat_id: str
    sender_id: str
    body: str = ""
    is_group: bool = False
    from_me: bool = False
    mentioned_ids: Tuple[str, ...] = ()
    # Other ids the payload gave for the sender (sender.id, from, ...)
    sender_aliases: Tuple[str, ...] = ()

    @property
    def sender_ids(self) -> Tuple[str, ...]:
        return (self.sender_id,) + tuple(a for a in self.sender_aliases if a != self.sender_id)


@dataclass(frozen=True)
class MessageCreated:
    message: IncomingMessage


@dataclass(frozen=True)
class GroupJoin:
    chat_id: str
    participant_ids: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class GroupLeave:
    chat_id: str
    participant_ids: Tuple[str, ...] = field(default_factory=tuple)


Event = Union[MessageCreated, GroupJoin, GroupLeave]


class ChatSession(Protocol):
    """What the dispatcher needs from the WhatsApp session. Every call may raise TransportError."""

    async def get_chat(self, chat_id: str) -> Chat: ...

    async def get_contact(self, contact_id: str) -> Contact: ...

    async def delete_message(self, message: IncomingMessage, for_everyone: bool = True) -> None: ...

    async def reply(self, message: IncomingMessage, text: str, mentions: Sequence[str] = ()) -> None: ...

    async def send_message(self, chat_id: str, text: str, mentions: Sequence[str] = ()) -> None: ...
