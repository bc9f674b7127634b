"""
Command dispatch and mute state.

Every inbound event goes through CommandDispatcher.handle(), which returns a
short status string (same vocabulary the webhook reports back).
"""
import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Sequence

from errors import AuthorizationError, TransportError, ValidationError
from models import (
    Chat, ChatSession, Event, GroupJoin, GroupLeave,
    IncomingMessage, MessageCreated, user_part,
)
import settings as cfg

logger = logging.getLogger(__name__)


class Command(str, enum.Enum):
    MUTE = "mute"
    UNMUTE = "unmute"
    NOTIFY_TAGGED = "notify-tagged"
    NOTIFY_SILENT = "notify-silent"


# Token after the prefix -> command
COMMAND_TOKENS = {
    "mute": Command.MUTE,
    "unmute": Command.UNMUTE,
    "todos": Command.NOTIFY_TAGGED,
    "n": Command.NOTIFY_SILENT,
}


class ModerationStore:
    """In-memory set of muted participants. Lives as long as the process.

    WPPConnect reports the same person as '5511...@c.us', '5511...@s.whatsapp.net'
    or a bare number, so entries are keyed by the number part of the id.
    """

    def __init__(self):
        self._muted = {}  # {user part: id as first muted}

    def is_muted(self, participant_id: str) -> bool:
        return user_part(participant_id) in self._muted

    def mute(self, participant_id: str) -> None:
        self._muted.setdefault(user_part(participant_id), participant_id)

    def unmute(self, participant_id: str) -> bool:
        """Returns True if the participant was muted."""
        return self._muted.pop(user_part(participant_id), None) is not None

    def muted(self) -> List[str]:
        return sorted(self._muted.values())

    def __len__(self):
        return len(self._muted)


@dataclass(frozen=True)
class EmptyContentPolicy:
    """What a broadcast does with no content: reject with usage, or send `default_text`."""
    default_text: Optional[str] = None

    @property
    def rejects(self) -> bool:
        return self.default_text is None

    @classmethod
    def parse(cls, value: str) -> "EmptyContentPolicy":
        if value == "reject":
            return cls()
        if value.startswith("use-default:"):
            text = value[len("use-default:"):].strip()
            if not text:
                raise ValueError("on_empty_content 'use-default:' needs a text")
            return cls(default_text=text)
        raise ValueError(f"Invalid on_empty_content: {value!r} (expected 'reject' or 'use-default:<text>')")


# Placeholders each message template may use
MESSAGE_FIELDS = {
    "groups_only": (),
    "admin_only": (),
    "mute_usage": (),
    "unmute_usage": (),
    "muted": ("target",),
    "unmuted": ("target",),
    "not_muted": ("target",),
    "notify_usage": ("command",),
    "notify_header": ("author", "content"),
    "welcome": ("name",),
    "welcome_default_name": (),
    "goodbye": ("name",),
    "goodbye_default_name": (),
}


def check_messages(messages) -> Dict[str, str]:
    """Merge message overrides over the defaults. Raises ValueError on a template that would not format."""
    if not isinstance(messages, dict):
        raise ValueError("messages must be an object of text templates")
    merged = {**cfg.DEFAULTS["messages"], **messages}
    for key, fields in MESSAGE_FIELDS.items():
        template = merged[key]
        if not isinstance(template, str):
            raise ValueError(f"messages.{key} must be a string")
        try:
            template.format(**{f: "x" for f in fields})
        except (KeyError, IndexError, ValueError) as e:
            allowed = ", ".join("{%s}" % f for f in fields) or "no placeholders"
            raise ValueError(f"messages.{key} is not a valid template ({allowed}): {e!r}") from e
    return merged


@dataclass(frozen=True)
class DispatchPolicy:
    prefix: str = "."
    require_admin: FrozenSet[Command] = frozenset(Command)
    on_empty_content: EmptyContentPolicy = EmptyContentPolicy()
    ignore_own_messages: bool = True
    welcome_enabled: bool = True
    goodbye_enabled: bool = True
    messages: Dict[str, str] = field(default_factory=lambda: dict(cfg.DEFAULTS["messages"]))

    @classmethod
    def from_settings(cls, settings: dict) -> "DispatchPolicy":
        """Build the policy once at startup. Raises ValueError on bad values."""
        prefix = settings.get("command_prefix", ".")
        if not isinstance(prefix, str) or not prefix or prefix != prefix.strip():
            raise ValueError("command_prefix must be a non-empty string without spaces")

        require_admin = settings.get("require_admin", cfg.DEFAULTS["require_admin"])
        if not isinstance(require_admin, (list, tuple)):
            raise ValueError("require_admin must be a list of command names")
        try:
            require_admin = frozenset(Command(c) for c in require_admin)
        except ValueError as e:
            raise ValueError(f"Invalid require_admin entry: {e}") from e

        on_empty_content = settings.get("on_empty_content", "reject")
        if not isinstance(on_empty_content, str):
            raise ValueError("on_empty_content must be 'reject' or 'use-default:<text>'")

        flags = {}
        for key in ("ignore_own_messages", "welcome_enabled", "goodbye_enabled"):
            flags[key] = settings.get(key, True)
            if not isinstance(flags[key], bool):
                raise ValueError(f"{key} must be true or false")

        return cls(
            prefix=prefix,
            require_admin=require_admin,
            on_empty_content=EmptyContentPolicy.parse(on_empty_content),
            messages=check_messages(settings.get("messages", {})),
            **flags,
        )

    def parse_command(self, body: str):
        """Split a prefixed body into (token, command or None, content)."""
        parts = body.split(None, 1)
        token = parts[0].lower() if parts else ""
        content = parts[1].strip() if len(parts) > 1 else ""
        command = COMMAND_TOKENS.get(token[len(self.prefix):]) if token.startswith(self.prefix) else None
        return token, command, content


class CommandDispatcher:
    def __init__(self, session: ChatSession, store: ModerationStore = None, policy: DispatchPolicy = None):
        self.session = session
        self.store = store if store is not None else ModerationStore()
        self.policy = policy or DispatchPolicy()

    def _text(self, key: str, **kwargs) -> str:
        return self.policy.messages[key].format(**kwargs)

    async def handle(self, event: Event) -> str:
        try:
            if isinstance(event, MessageCreated):
                return await self.on_message(event.message)
            if isinstance(event, GroupJoin):
                return await self.on_group_join(event)
            if isinstance(event, GroupLeave):
                return await self.on_group_leave(event)
        except TransportError as e:
            logger.error(f"DISPATCH: transport error while handling {type(event).__name__}: {e}")
            return "transport_error"
        raise TypeError(f"Unsupported event: {event!r}")

    # --- transport helpers: log and swallow failures ---
    async def _reply(self, msg: IncomingMessage, text: str, mentions: Sequence[str] = ()) -> bool:
        try:
            await self.session.reply(msg, text, mentions=mentions)
            return True
        except TransportError as e:
            logger.error(f"REPLY failed in {msg.chat_id}: {e}")
            return False

    async def _send(self, chat_id: str, text: str, mentions: Sequence[str] = ()) -> bool:
        try:
            await self.session.send_message(chat_id, text, mentions=mentions)
            return True
        except TransportError as e:
            logger.error(f"SEND failed in {chat_id}: {e}")
            return False

    async def on_message(self, msg: IncomingMessage) -> str:
        if msg.from_me and self.policy.ignore_own_messages:
            return "from_me"

        if msg.is_group and any(self.store.is_muted(i) for i in msg.sender_ids):
            try:
                await self.session.delete_message(msg, for_everyone=True)
            except TransportError as e:
                logger.error(f"MUTE: failed to delete message from {msg.sender_id} in {msg.chat_id}: {e}")
                return "delete_failed"
            logger.info(f"MUTE: deleted message from muted user {msg.sender_id} in {msg.chat_id}")
            return "deleted_muted"

        if not msg.body.startswith(self.policy.prefix):
            return "ignored"

        token, command, content = self.policy.parse_command(msg.body)
        if command is None:
            return "ignored"

        if not msg.is_group:
            await self._reply(msg, self._text("groups_only"))
            return "groups_only"

        try:
            chat = await self.session.get_chat(msg.chat_id)
            self._authorize(command, chat, msg.sender_ids)
            if command is Command.MUTE:
                return await self._mute(msg)
            if command is Command.UNMUTE:
                return await self._unmute(msg)
            return await self._notify(command, token, chat, msg, content)
        except AuthorizationError as e:
            logger.info(f"DENIED: {msg.sender_id} tried {token} in {msg.chat_id}")
            await self._reply(msg, str(e))
            return "denied"
        except ValidationError as e:
            await self._reply(msg, str(e))
            return "usage"

    def _authorize(self, command: Command, chat: Chat, sender_ids: Sequence[str]) -> None:
        if command not in self.policy.require_admin:
            return
        participant = chat.participant(*sender_ids)
        if participant is None or not (participant.is_admin or participant.is_super_admin):
            raise AuthorizationError(self._text("admin_only"))

    async def _first_mention(self, msg: IncomingMessage, usage_key: str):
        """(ids the target is known by, contact) for the first mention."""
        if not msg.mentioned_ids:
            raise ValidationError(self._text(usage_key))
        mentioned = msg.mentioned_ids[0]
        target = await self.session.get_contact(mentioned)
        # The contact lookup can answer with the phone id for an @lid mention
        ids = [mentioned] if user_part(target.id) == user_part(mentioned) else [mentioned, target.id]
        return ids, target

    async def _mute(self, msg: IncomingMessage) -> str:
        ids, target = await self._first_mention(msg, "mute_usage")
        for target_id in ids:
            self.store.mute(target_id)
        logger.info(f"MUTE: {', '.join(ids)} muted by {msg.sender_id} in {msg.chat_id}")
        await self._reply(msg, self._text("muted", target=target.user), mentions=[target.id])
        return "muted"

    async def _unmute(self, msg: IncomingMessage) -> str:
        ids, target = await self._first_mention(msg, "unmute_usage")
        was_muted = [self.store.unmute(target_id) for target_id in ids]
        if any(was_muted):
            logger.info(f"UNMUTE: {', '.join(ids)} reactivated by {msg.sender_id} in {msg.chat_id}")
            await self._reply(msg, self._text("unmuted", target=target.user), mentions=[target.id])
            return "unmuted"
        await self._reply(msg, self._text("not_muted", target=target.user), mentions=[target.id])
        return "not_muted"

    async def _notify(self, command: Command, token: str, chat: Chat, msg: IncomingMessage, content: str) -> str:
        if not content:
            if self.policy.on_empty_content.rejects:
                raise ValidationError(self._text("notify_usage", command=token))
            content = self.policy.on_empty_content.default_text

        contacts = [await self.session.get_contact(p.id) for p in chat.participants]
        mentions = [c.id for c in contacts]

        if command is Command.NOTIFY_TAGGED:
            text = self._text("notify_header", author=user_part(msg.sender_id), content=content)
            text += " ".join(f"@{p.user}" for p in chat.participants)
            await self._send(chat.id, text, mentions=mentions)
            logger.info(f"NOTIFY: tagged broadcast to {len(mentions)} participants in {chat.name or chat.id}")
            return "notified_tagged"

        await self._send(chat.id, content, mentions=mentions)
        logger.info(f"NOTIFY: silent broadcast to {len(mentions)} participants in {chat.name or chat.id}")
        return "notified_silent"

    async def _greet(self, chat_id: str, participant_ids, template: str, default_key: str) -> str:
        if not participant_ids:
            return "missing_data"
        contact = await self.session.get_contact(participant_ids[0])
        name = contact.display_name(self._text(default_key))
        await self._send(chat_id, self._text(template, name=name))
        return "sent"

    async def on_group_join(self, event: GroupJoin) -> str:
        if not self.policy.welcome_enabled:
            return "welcome_disabled"
        status = await self._greet(event.chat_id, event.participant_ids, "welcome", "welcome_default_name")
        return "welcomed" if status == "sent" else status

    async def on_group_leave(self, event: GroupLeave) -> str:
        if not self.policy.goodbye_enabled:
            return "goodbye_disabled"
        status = await self._greet(event.chat_id, event.participant_ids, "goodbye", "goodbye_default_name")
        return "farewelled" if status == "sent" else status
