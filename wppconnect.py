"""
WPPConnect Server client. Implements the ChatSession capability used by the
dispatcher, plus session lifecycle calls used by the web service.
"""
import asyncio
import base64
import logging
from datetime import datetime
from typing import Optional, Sequence

import httpx

from errors import TransportError
from models import (
    Chat, Contact, Event, GroupJoin, GroupLeave, IncomingMessage,
    MessageCreated, Participant, user_part,
)

logger = logging.getLogger(__name__)

# Cache group admins for 5 minutes to avoid calling WPP API on every command
_GROUP_ADMIN_CACHE_TTL = 300  # seconds

CONNECTED_STATES = (True, "CONNECTED", "isLogged", "inChat")


def serialized_id(value) -> str:
    """WPPConnect returns ids either as strings or as {'_serialized': ..., 'user': ...}."""
    if isinstance(value, dict):
        return value.get("_serialized") or value.get("id") or ""
    return value or ""


def unwrap(data):
    """Most endpoints wrap their payload in {'status': ..., 'response': ...}."""
    if isinstance(data, dict) and "response" in data:
        return data["response"]
    return data


class WPPConnectClient:
    def __init__(self, base_url: str, session: str, secret_key: str, webhook_url: str = "",
                 super_admins: Sequence[str] = (), transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.session = session
        self.secret_key = secret_key
        self.webhook_url = webhook_url
        self.super_admins = set(super_admins)
        self.token = None
        self.headers = {
            "Content-Type": "application/json",
        }
        self._transport = transport
        self._admin_cache = {}  # {group_id: {"ids": set(), "time": datetime}}

    def _client(self, timeout: float = 30) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api/{self.session}/{path}"

    async def generate_token(self):
        """Step 1: Generate JWT token using the secret key."""
        url = self._url(f"{self.secret_key}/generate-token")
        async with self._client() as client:
            try:
                resp = await client.post(url)
                logger.info(f"Generate Token: {resp.status_code}")
                if resp.status_code in (200, 201):
                    data = resp.json()
                    self.token = data.get("token")
                    self.headers["Authorization"] = f"Bearer {self.token}"
                    logger.info("Token generated successfully!")
                    return True
                logger.error(f"Failed to generate token: {resp.text[:200]}")
                return False
            except httpx.HTTPError as e:
                logger.error(f"Error generating token: {e}")
                return False

    async def _request(self, method: str, path: str, timeout: float = 30, **kwargs) -> httpx.Response:
        """Authenticated call. Regenerates the token once on 401. Raises TransportError."""
        if not self.token:
            await self.generate_token()
        url = self._url(path)
        async with self._client(timeout) as client:
            try:
                resp = await client.request(method, url, headers=self.headers, **kwargs)
                if resp.status_code == 401:
                    logger.warning(f"WPP {method} {path}: 401, regenerating token")
                    await self.generate_token()
                    resp = await client.request(method, url, headers=self.headers, **kwargs)
            except httpx.HTTPError as e:
                raise TransportError(f"{method} {path}: {e}") from e
        if resp.status_code >= 400:
            raise TransportError(f"{method} {path}: {resp.status_code} - {resp.text[:200]}")
        return resp

    # --- session lifecycle ---
    async def start_session(self):
        """Generate token first, then start the session with our webhook."""
        token_ok = await self.generate_token()
        if not token_ok:
            logger.error("Cannot start session without a valid token.")
            return False
        try:
            resp = await self._request("POST", "start-session", json={
                "webhook": self.webhook_url,
                "waitQrCode": False,
            })
            logger.info(f"Start Session: {resp.status_code} - {resp.text[:300]}")
            return True
        except TransportError as e:
            logger.error(f"Error starting session: {e}")
            return False

    async def subscribe_webhook(self):
        """Explicitly subscribe to webhook events. Does NOT restart the session."""
        try:
            resp = await self._request("POST", "subscribe", timeout=15, json={
                "webhook": self.webhook_url,
                "events": ["onAnyMessage", "onParticipantsChanged"],
            })
            logger.info(f"Subscribe webhook: {resp.status_code} - {resp.text[:200]}")
            return True
        except TransportError as e:
            logger.warning(f"Subscribe failed: {e}")
            return False

    async def check_session_status(self) -> dict:
        """Returns dict with 'connected' bool and 'status' string."""
        try:
            resp = await self._request("GET", "check-connection-session", timeout=15)
            data = resp.json()
            # WPPConnect returns {"status": true/false} or {"response": true/false}
            status_val = data.get("response", data.get("status", False))
            connected = status_val in CONNECTED_STATES
            return {"connected": connected, "status": "connected" if connected else str(status_val)}
        except (TransportError, ValueError) as e:
            logger.error(f"Error checking session status: {e}")
            return {"connected": False, "status": f"error: {e}"}

    async def get_qr_code(self) -> Optional[str]:
        """Current pairing QR as a data URI, or None when there is nothing to scan."""
        try:
            resp = await self._request("GET", "qrcode-session", timeout=15)
        except TransportError as e:
            logger.error(f"Error fetching QR: {e}")
            return None
        content_type = resp.headers.get("content-type", "")
        if "image" in content_type:
            b64 = base64.b64encode(resp.content).decode("utf-8")
            return f"data:{content_type.split(';')[0]};base64,{b64}"
        try:
            data = resp.json()
        except ValueError:
            return None
        return data.get("qrcode") or data.get("base64Qr") or None

    async def close_session(self):
        """Close the WPP session without logging out."""
        try:
            resp = await self._request("POST", "close-session", timeout=15)
            logger.info(f"Close Session: {resp.status_code} - {resp.text[:200]}")
            return True
        except TransportError as e:
            logger.error(f"Error closing session: {e}")
            return False

    async def logout_session(self):
        """Logout the WPP session (clears auth, will need QR code scan again)."""
        try:
            resp = await self._request("POST", "logout-session", timeout=15)
            logger.info(f"Logout Session: {resp.status_code} - {resp.text[:200]}")
            return True
        except TransportError as e:
            logger.error(f"Error logging out session: {e}")
            return False

    async def full_reconnect(self):
        """Full reconnection: regenerate token + restart session + re-subscribe webhook."""
        logger.warning("WPP: Starting full reconnection sequence...")
        ok = await self.start_session()
        if not ok:
            logger.error("WPP: Full reconnection failed at start-session")
            return False
        await asyncio.sleep(5)
        await self.subscribe_webhook()
        logger.info("WPP: Full reconnection sequence completed")
        return True

    # --- ChatSession ---
    async def get_group_admin_ids(self, group_id: str) -> set:
        """Get admin IDs for a group, cached for 5 minutes."""
        now = datetime.now()
        cached = self._admin_cache.get(group_id)
        if cached and (now - cached["time"]).total_seconds() < _GROUP_ADMIN_CACHE_TTL:
            return cached["ids"]

        resp = await self._request("GET", f"group-admins/{group_id}")
        admins = unwrap(resp.json())
        # Flatten nested arrays: API may return [[{...}, {...}]] instead of [{...}, {...}]
        if isinstance(admins, list) and admins and isinstance(admins[0], list):
            admins = admins[0]

        admin_ids = set()
        for admin in admins if isinstance(admins, list) else []:
            admin_id = serialized_id(admin)
            if admin_id:
                admin_ids.add(admin_id)

        logger.info(f"GROUP_ADMINS: {group_id[:20]} -> {len(admin_ids)} admins")
        self._admin_cache[group_id] = {"ids": admin_ids, "time": now}
        return admin_ids

    async def get_chat(self, chat_id: str) -> Chat:
        if not chat_id.endswith("@g.us"):
            return Chat(id=chat_id, is_group=False)

        resp = await self._request("GET", f"group-members/{chat_id}")
        members = unwrap(resp.json())
        admin_users = {user_part(a) for a in await self.get_group_admin_ids(chat_id)}

        participants = []
        for member in members if isinstance(members, list) else []:
            member_id = serialized_id(member.get("id") if isinstance(member, dict) else member)
            if not member_id:
                continue
            participants.append(Participant(
                id=member_id,
                is_admin=user_part(member_id) in admin_users,
                is_super_admin=user_part(member_id) in self.super_admins,
            ))
        return Chat(id=chat_id, is_group=True, participants=tuple(participants))

    async def get_contact(self, contact_id: str) -> Contact:
        resp = await self._request("GET", f"contact/{contact_id}", timeout=15)
        data = unwrap(resp.json())
        if not isinstance(data, dict):
            return Contact(id=contact_id)
        return Contact(
            id=serialized_id(data.get("id")) or contact_id,
            pushname=data.get("pushname") or "",
            verified_name=data.get("verifiedName") or "",
            name=data.get("name") or data.get("formattedName") or "",
        )

    async def delete_message(self, message: IncomingMessage, for_everyone: bool = True) -> None:
        logger.info(f"DELETE_MSG: phone={message.chat_id}, msgId={message.id}")
        resp = await self._request("POST", "delete-message", json={
            "phone": message.chat_id,
            "messageId": message.id,
            "isGroup": message.is_group,
            "onlyLocal": not for_everyone,
        })
        logger.info(f"DELETE_MSG resp: {resp.status_code} - {resp.text[:200]}")

    async def send_message(self, chat_id: str, text: str, mentions: Sequence[str] = (), quoted_id: str = "") -> None:
        options = {}
        if mentions:
            options["mentionedList"] = list(mentions)
        if quoted_id:
            options["quotedMsg"] = quoted_id
        payload = {"phone": chat_id, "message": text, "isGroup": chat_id.endswith("@g.us")}
        if options:
            payload["options"] = options
        logger.info(f"SEND_MSG: phone={chat_id}, msg_len={len(text)}, mentions={len(mentions)}")
        resp = await self._request("POST", "send-message", json=payload)
        logger.info(f"SEND_MSG resp: {resp.status_code} - {resp.text[:200]}")

    async def reply(self, message: IncomingMessage, text: str, mentions: Sequence[str] = ()) -> None:
        await self.send_message(message.chat_id, text, mentions=mentions, quoted_id=message.id)


# --- WEBHOOK PAYLOADS ---
MESSAGE_EVENTS = ("onmessage", "on-message", "onanymessage", "onmessage.data")
PARTICIPANT_EVENTS = ("onparticipantschanged", "on-participants-changed")
SESSION_EVENTS = ("qrcode", "desconnectedmobile", "deletedsession", "disconnected", "status-find")
SYSTEM_MESSAGE_TYPES = ("gp2", "notification_template", "e2e_notification", "call_log",
                        "protocol_message", "ciphertext", "revoked")


def _payload(data: dict) -> dict:
    msg = data.get("response") or data.get("data") or data.get("message") or data.get("msg")
    return msg if isinstance(msg, dict) else data


def parse_message(msg: dict) -> Optional[IncomingMessage]:
    """Build an IncomingMessage from a WPPConnect message object. None for system messages."""
    if msg.get("type", "") in SYSTEM_MESSAGE_TYPES:
        return None
    chat_id = serialized_id(msg.get("chatId")) or serialized_id(msg.get("from"))
    is_group = bool(msg.get("isGroupMsg", chat_id.endswith("@g.us")))
    sender_obj = msg.get("sender") or {}
    # Group messages can name the sender as @lid in author and as @c.us in sender.id
    candidates = [
        serialized_id(msg.get("author")),
        serialized_id(sender_obj.get("id") if isinstance(sender_obj, dict) else sender_obj),
        "" if is_group else serialized_id(msg.get("from")),
    ]
    sender_ids = []
    for candidate in candidates:
        if candidate and candidate not in sender_ids:
            sender_ids.append(candidate)
    if not chat_id or not sender_ids:
        return None
    mentioned = msg.get("mentionedJidList") or []
    return IncomingMessage(
        id=serialized_id(msg.get("id")),
        chat_id=chat_id,
        sender_id=sender_ids[0],
        body=msg.get("body") or "",
        is_group=is_group,
        from_me=bool(msg.get("fromMe", False)),
        mentioned_ids=tuple(serialized_id(m) for m in mentioned if serialized_id(m)),
        sender_aliases=tuple(sender_ids[1:]),
    )


def parse_webhook_event(data: dict) -> Optional[Event]:
    """Translate a WPPConnect webhook body into a dispatcher event, or None to ignore it."""
    event = (data.get("event") or "").lower()
    msg = _payload(data)

    if event in MESSAGE_EVENTS:
        incoming = parse_message(msg)
        return MessageCreated(incoming) if incoming else None

    if event in PARTICIPANT_EVENTS:
        action = msg.get("action", "")
        group_id = serialized_id(msg.get("groupId")) or serialized_id(msg.get("chatId"))
        who = msg.get("who") or msg.get("participantId") or []
        # Normalize who -> always a list of ids
        participants = who if isinstance(who, list) else [who]
        participant_ids = tuple(serialized_id(p) for p in participants if serialized_id(p))
        if not group_id or not participant_ids:
            return None
        if action in ("add", "join"):
            return GroupJoin(group_id, participant_ids)
        if action in ("remove", "leave"):
            return GroupLeave(group_id, participant_ids)
    return None
