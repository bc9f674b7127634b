"""HTTP tests for the webhook, status page and admin API."""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

import bot
import settings as cfg
from conftest import ADMIN, GROUP_ID, MEMBER
from database import init_db
from moderation import ModerationStore

AUTH = ("admin", "admin")


@pytest.fixture
def client(monkeypatch, session):
    init_db()
    store = ModerationStore()
    monkeypatch.setattr(bot, "store", store)
    monkeypatch.setattr(bot.dispatcher, "store", store)
    monkeypatch.setattr(bot.dispatcher, "session", session)
    monkeypatch.setattr(bot.dispatcher, "policy", bot.dispatcher.policy)
    monkeypatch.setattr(bot, "pairing", {"qr": None, "status": "starting", "updated": None})
    monkeypatch.setattr(bot.wpp, "full_reconnect", AsyncMock(return_value=True))
    monkeypatch.setattr(bot.wpp, "check_session_status", AsyncMock(return_value={"connected": True, "status": "connected"}))
    return TestClient(bot.app)


def group_message(body, sender=ADMIN, mentions=(), msg_id="MSG1"):
    return {
        "event": "onmessage",
        "session": "moderador",
        "id": msg_id,
        "body": body,
        "type": "chat",
        "from": GROUP_ID,
        "chatId": GROUP_ID,
        "author": sender,
        "isGroupMsg": True,
        "fromMe": False,
        "mentionedJidList": list(mentions),
    }


class TestWebhook:
    def test_mute_command_and_enforcement(self, client, session):
        resp = client.post("/webhook", json=group_message(".mute @bruno", mentions=[MEMBER]))
        assert resp.json() == {"status": "muted"}

        resp = client.post("/webhook", json=group_message("hola", sender=MEMBER, msg_id="MSG2"))
        assert resp.json() == {"status": "deleted_muted"}
        session.delete_message.assert_awaited_once()

        muted = client.get("/api/muted", auth=AUTH).json()
        assert muted == {"muted": [MEMBER]}

    def test_lid_author_is_matched_by_sender_id(self, client, session):
        client.post("/webhook", json=group_message(".mute @bruno", mentions=[MEMBER]))
        payload = group_message("hola", sender="99887766554433@lid", msg_id="MSG2")
        payload["sender"] = {"id": MEMBER}

        assert client.post("/webhook", json=payload).json() == {"status": "deleted_muted"}

    def test_command_outcome_is_recorded(self, client):
        client.post("/webhook", json=group_message(".todos reunión a las 8"))

        actions = client.get("/api/actions", params={"limit": 5}, auth=AUTH).json()["actions"]
        assert actions[0]["outcome"] == "notified_tagged"
        assert actions[0]["command"] == ".todos"
        assert actions[0]["chat_id"] == GROUP_ID

    def test_ordinary_message_is_ignored(self, client, session):
        assert client.post("/webhook", json=group_message("buenas")).json() == {"status": "ignored"}
        session.reply.assert_not_awaited()

    def test_participant_join_sends_welcome(self, client, session):
        resp = client.post("/webhook", json={
            "event": "onparticipantschanged", "groupId": GROUP_ID, "action": "add", "who": [MEMBER],
        })
        assert resp.json() == {"status": "welcomed"}
        assert "Bruno" in session.send_message.await_args.args[1]

    def test_unknown_event_is_ignored(self, client):
        assert client.post("/webhook", json={"event": "onack"}).json() == {"status": "ignored"}

    def test_invalid_body(self, client):
        resp = client.post("/webhook", content=b"not json", headers={"content-type": "application/json"})
        assert resp.json() == {"status": "error"}

    def test_disconnect_triggers_reconnect(self, client):
        assert client.post("/webhook", json={"event": "disconnected"}).json() == {"status": "reconnecting"}
        bot.wpp.full_reconnect.assert_awaited_once()
        assert bot.pairing["status"] == "disconnected"

    def test_webhook_log_keeps_last_entries(self, client):
        for _ in range(25):
            client.post("/webhook", json={"event": "onack"})
        log = client.get("/api/debug/webhook-log", auth=AUTH).json()
        assert log["total"] == 20


class TestStatusPage:
    def test_qr_is_shown_while_pairing(self, client):
        client.post("/webhook", json={"event": "qrcode", "qrcode": "data:image/png;base64,AAAA", "urlcode": "2@abc"})

        page = client.get("/")
        assert page.status_code == 200
        assert 'src="data:image/png;base64,AAAA"' in page.text

    def test_online_after_connection(self, client):
        client.post("/webhook", json={"event": "qrcode", "qrcode": "data:image/png;base64,AAAA"})
        client.post("/webhook", json={"event": "status-find", "status": "inChat"})

        page = client.get("/")
        assert "en línea y funcionando" in page.text
        assert "base64,AAAA" not in page.text


class TestAdminApi:
    def test_requires_auth(self, client):
        assert client.get("/api/muted").status_code == 401
        assert client.get("/api/muted", auth=("admin", "wrong")).status_code == 401

    def test_status(self, client):
        data = client.get("/api/status", auth=AUTH).json()
        assert data["wpp_connected"] is True
        assert data["muted_count"] == 0

    def test_settings_update_applies_policy(self, client, monkeypatch, tmp_path):
        monkeypatch.setattr(cfg, "SETTINGS_FILE", str(tmp_path / "settings.json"))
        monkeypatch.setattr(cfg, "_settings", None)

        resp = client.post("/api/settings", json={"on_empty_content": "use-default:Atención"}, auth=AUTH)

        assert resp.json()["status"] == "success"
        assert bot.dispatcher.policy.on_empty_content.default_text == "Atención"
        assert (tmp_path / "settings.json").exists()
        assert client.post("/webhook", json=group_message(".n")).json() == {"status": "notified_silent"}

    def test_invalid_settings_are_rejected(self, client, monkeypatch, tmp_path):
        monkeypatch.setattr(cfg, "SETTINGS_FILE", str(tmp_path / "settings.json"))
        monkeypatch.setattr(cfg, "_settings", None)
        before = bot.dispatcher.policy

        resp = client.post("/api/settings", json={"require_admin": ["ban"]}, auth=AUTH)

        assert resp.status_code == 400
        assert bot.dispatcher.policy is before
        assert not (tmp_path / "settings.json").exists()

    @pytest.mark.parametrize("body", [
        {"messages": {"muted": "{nombre} silenciado"}},
        {"messages": {"notify_header": "{author}: {contenido}"}},
        {"require_admin": None},
        {"welcome_enabled": "no"},
    ])
    def test_malformed_settings_return_400(self, client, monkeypatch, tmp_path, body):
        monkeypatch.setattr(cfg, "SETTINGS_FILE", str(tmp_path / "settings.json"))
        monkeypatch.setattr(cfg, "_settings", None)
        before = bot.dispatcher.policy

        resp = client.post("/api/settings", json=body, auth=AUTH)

        assert resp.status_code == 400
        assert bot.dispatcher.policy is before
        assert client.post("/webhook", json=group_message(".mute @bruno", mentions=[MEMBER])).json() == {"status": "muted"}

    def test_qr_from_last_webhook(self, client, monkeypatch):
        monkeypatch.setattr(bot.wpp, "get_qr_code", AsyncMock(return_value=None))
        client.post("/webhook", json={"event": "qrcode", "qrcode": "data:image/png;base64,AAAA"})

        data = client.get("/api/qr", auth=AUTH).json()

        assert data == {"qr": "data:image/png;base64,AAAA", "status": "waiting_scan"}
        bot.wpp.get_qr_code.assert_not_awaited()

    def test_qr_fetched_from_server(self, client, monkeypatch):
        monkeypatch.setattr(bot.wpp, "get_qr_code", AsyncMock(return_value="data:image/png;base64,BBBB"))

        data = client.get("/api/qr", auth=AUTH).json()

        assert data == {"qr": "data:image/png;base64,BBBB", "status": "waiting_scan"}

    def test_no_qr_reports_pairing_status(self, client, monkeypatch):
        monkeypatch.setattr(bot.wpp, "get_qr_code", AsyncMock(return_value=None))
        assert client.get("/api/qr", auth=AUTH).json() == {"qr": None, "status": "starting"}

    def test_unknown_session_action(self, client):
        assert client.post("/api/session", json={"action": "reboot"}, auth=AUTH).status_code == 400


class TestWatchdog:
    @pytest.fixture(autouse=True)
    def _reset_watchdog(self, monkeypatch):
        monkeypatch.setattr(bot, "_consecutive_failures", 0)
        monkeypatch.setattr(bot, "_last_reconnect_time", None)
        monkeypatch.setattr(bot, "pairing", {"qr": None, "status": "starting", "updated": None})
        monkeypatch.setattr(bot.wpp, "full_reconnect", AsyncMock(return_value=True))

    @pytest.mark.asyncio
    async def test_reconnects_once_within_cooldown(self, monkeypatch):
        monkeypatch.setattr(bot.wpp, "check_session_status",
                            AsyncMock(return_value={"connected": False, "status": "CLOSED"}))

        await bot.job_watchdog()
        await bot.job_watchdog()

        bot.wpp.full_reconnect.assert_awaited_once()
        assert bot._consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_waiting_for_scan_is_left_alone(self, monkeypatch):
        monkeypatch.setattr(bot.wpp, "check_session_status",
                            AsyncMock(return_value={"connected": False, "status": "notLogged"}))
        bot.pairing["status"] = "waiting_scan"

        await bot.job_watchdog()

        bot.wpp.full_reconnect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_connected_marks_pairing_done(self, monkeypatch):
        monkeypatch.setattr(bot.wpp, "check_session_status",
                            AsyncMock(return_value={"connected": True, "status": "connected"}))

        await bot.job_watchdog()

        assert bot.pairing["status"] == "connected"
        bot.wpp.full_reconnect.assert_not_awaited()
