import os
import logging
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime

import uvicorn
from fastapi import FastAPI, Request, BackgroundTasks, Depends, HTTPException, status
from fastapi.responses import HTMLResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from database import init_db, record_action, recent_actions
from models import MessageCreated
from moderation import CommandDispatcher, DispatchPolicy, ModerationStore
from wppconnect import WPPConnectClient, parse_webhook_event, CONNECTED_STATES
import settings as cfg

# --- CONFIGURATION ---
WPP_SERVER_URL = os.getenv("WPP_SERVER_URL", "http://localhost:21465")
SESSION_NAME = os.getenv("SESSION_NAME", "moderador")
WPP_SECRET_KEY = os.getenv("WPP_SECRET_KEY", "THISISMYSECURETOKEN")
WEBHOOK_URL = os.getenv("WEBHOOK_URL", "http://localhost:8000/webhook")
PORT = int(os.getenv("PORT", "8000"))

# Logging setup
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Security
security = HTTPBasic()
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
templates = Jinja2Templates(directory=os.path.join(BASE_DIR, "templates"))

def get_current_username(credentials: HTTPBasicCredentials = Depends(security)):
    correct_username = os.getenv("ADMIN_USER", "admin")
    correct_password = os.getenv("ADMIN_PASS", "admin")
    if credentials.username != correct_username or credentials.password != correct_password:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username

# --- SESSION & DISPATCHER ---
wpp = WPPConnectClient(
    WPP_SERVER_URL, SESSION_NAME, WPP_SECRET_KEY,
    webhook_url=WEBHOOK_URL,
    super_admins=cfg.get("super_admins", []),
)
store = ModerationStore()
dispatcher = CommandDispatcher(wpp, store, DispatchPolicy.from_settings(cfg.get_settings()))

# Pairing state shown on the status page
pairing = {"qr": None, "status": "starting", "updated": None}

def _set_pairing(state: str, qr=None):
    pairing["status"] = state
    pairing["qr"] = qr
    pairing["updated"] = datetime.now().isoformat()

# --- WATCHDOG ---
_session_status = "unknown"  # Track current session status
_consecutive_failures = 0  # Track reconnect attempts
_last_reconnect_time = None  # Cooldown: don't reconnect too often
_RECONNECT_COOLDOWN_MINUTES = 15  # Wait at least 15 min between reconnect attempts

async def job_watchdog():
    """Check session health and reconnect if needed."""
    global _session_status, _consecutive_failures, _last_reconnect_time

    status_info = await wpp.check_session_status()
    _session_status = status_info["status"]

    if status_info["connected"]:
        if _consecutive_failures:
            logger.info(f"WATCHDOG: Session back after {_consecutive_failures} failed checks")
        _consecutive_failures = 0
        if pairing["status"] != "connected":
            _set_pairing("connected")
        return

    # Waiting for a QR scan is not a failure
    if pairing["status"] == "waiting_scan" or "INITIALIZING" in _session_status.upper():
        logger.info("WATCHDOG: Waiting for QR scan - NOT reconnecting")
        return

    if _last_reconnect_time:
        mins_since = (datetime.now() - _last_reconnect_time).total_seconds() / 60
        if mins_since < _RECONNECT_COOLDOWN_MINUTES:
            logger.info(f"WATCHDOG: Cooldown active ({mins_since:.0f}/{_RECONNECT_COOLDOWN_MINUTES} min) - skipping reconnect")
            return

    _consecutive_failures += 1
    logger.warning(f"WATCHDOG: Session DISCONNECTED (status={_session_status}, attempt #{_consecutive_failures})")
    _last_reconnect_time = datetime.now()
    if await wpp.full_reconnect():
        logger.info("WATCHDOG: Reconnection successful")
    else:
        logger.error(f"WATCHDOG: Reconnection failed (attempt #{_consecutive_failures})")

# --- FASTAPI APP & LIFESPAN ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Bot starting up...")
    logger.info("--- CONFIG ---")
    logger.info(f"WPP_SERVER_URL: {WPP_SERVER_URL}")
    logger.info(f"SESSION_NAME: {SESSION_NAME}")
    logger.info(f"WEBHOOK_URL: {WEBHOOK_URL}")
    logger.info(f"REQUIRE_ADMIN: {sorted(c.value for c in dispatcher.policy.require_admin)}")
    logger.info("--------------")

    init_db()

    scheduler = AsyncIOScheduler()
    scheduler.add_job(job_watchdog, 'interval', minutes=5, id='watchdog')
    scheduler.start()
    logger.info("Scheduler started: watchdog(5m)")

    async def startup_sequence():
        await wpp.start_session()
        # Wait for session to connect (QR scan may take time)
        await asyncio.sleep(10)
        logger.info("Subscribing webhook...")
        await wpp.subscribe_webhook()
        logger.info("Startup sequence complete")

    asyncio.create_task(startup_sequence())
    yield
    scheduler.shutdown(wait=False)
    logger.info("Bot shutting down...")

app = FastAPI(lifespan=lifespan)

# --- STATUS PAGE ---
@app.get("/", response_class=HTMLResponse)
async def page_status(request: Request):
    return templates.TemplateResponse(request, "status.html", {
        "qr": pairing["qr"],
        "status": pairing["status"],
        "session_name": SESSION_NAME,
    })

# --- ADMIN API ---
@app.get("/api/status")
async def api_status(username: str = Depends(get_current_username)):
    status_info = await wpp.check_session_status()
    return {
        "wpp_connected": status_info["connected"],
        "session_status": status_info["status"],
        "pairing": pairing["status"],
        "muted_count": len(store),
    }

@app.get("/api/qr")
async def api_qr(username: str = Depends(get_current_username)):
    """Current QR, from the last webhook or fetched from wppconnect-server."""
    qr = pairing["qr"] or await wpp.get_qr_code()
    return {"qr": qr, "status": "waiting_scan" if qr else pairing["status"]}

@app.get("/api/muted")
async def api_muted(username: str = Depends(get_current_username)):
    return {"muted": store.muted()}

@app.get("/api/actions")
async def api_actions(limit: int = 50, username: str = Depends(get_current_username)):
    return {"actions": recent_actions(min(max(limit, 1), 500))}

@app.get("/api/settings")
async def api_settings_get(username: str = Depends(get_current_username)):
    """Get current settings."""
    return cfg.get_settings()

@app.post("/api/settings")
async def api_settings_update(request: Request, username: str = Depends(get_current_username)):
    """Validate and save settings, then apply them to the dispatcher."""
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings must be a JSON object")
    try:
        policy = DispatchPolicy.from_settings({**cfg.get_settings(), **body})
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    updated = cfg.save_settings(body)
    dispatcher.policy = policy
    wpp.super_admins = set(updated.get("super_admins", []))
    return {"status": "success", "settings": updated}

class SessionAction(BaseModel):
    action: str

@app.post("/api/session")
async def api_session_action(data: SessionAction, background_tasks: BackgroundTasks, username: str = Depends(get_current_username)):
    if data.action == "start":
        background_tasks.add_task(wpp.start_session)
        return {"status": "success", "message": "Session starting, wait for the QR code."}
    if data.action == "close":
        return {"status": "success" if await wpp.close_session() else "error"}
    if data.action == "logout":
        ok = await wpp.logout_session()
        if ok:
            _set_pairing("logged_out")
        return {"status": "success" if ok else "error"}
    raise HTTPException(status_code=400, detail=f"Unknown action: {data.action}")

# --- WEBHOOK ---
# Debug: store last 20 webhook events for inspection
_webhook_log = []

def _log_webhook(entry):
    """Append to webhook log buffer, keeping max 20 entries."""
    _webhook_log.append(entry)
    if len(_webhook_log) > 20: _webhook_log.pop(0)

@app.get("/api/debug/webhook-log")
async def api_debug_webhook_log(username: str = Depends(get_current_username)):
    """Return last 20 webhook events for debugging."""
    return {"log": _webhook_log, "total": len(_webhook_log)}

def _record(event, outcome: str):
    msg = event.message
    parts = msg.body.split(None, 1)
    record_action(
        chat_id=msg.chat_id,
        sender_id=msg.sender_id,
        command=parts[0].lower() if parts else "",
        outcome=outcome,
        target_id=msg.mentioned_ids[0] if msg.mentioned_ids else "",
    )

@app.post("/webhook")
async def receive_webhook(request: Request, background_tasks: BackgroundTasks):
    try:
        data = await request.json()
    except ValueError:
        return {"status": "error"}
    if not isinstance(data, dict):
        return {"status": "error"}

    raw_event = data.get('event', '')
    event = raw_event.lower() if raw_event else ''
    log_entry = {"time": datetime.now().isoformat(), "event": event}

    # --- Pairing artifact ---
    if event == 'qrcode':
        _set_pairing("waiting_scan", data.get('qrcode') or data.get('base64Qr'))
        logger.info("--- QR AVAILABLE AT THE SERVICE URL ---")
        if data.get('urlcode'):
            logger.info(f"QR payload: {data['urlcode']}")
        log_entry["status"] = "qrcode"
        _log_webhook(log_entry)
        return {"status": "qrcode"}

    if event == 'status-find':
        session_state = data.get('status', '')
        if session_state in CONNECTED_STATES:
            _set_pairing("connected")
            logger.info("✅ BOT CONNECTED AND READY")
        log_entry["status"] = f"session_{session_state}"
        _log_webhook(log_entry)
        return {"status": "session_status"}

    # --- Detect session disconnect ---
    if event in ('desconnectedmobile', 'deletedsession', 'disconnected'):
        _set_pairing("disconnected")
        logger.critical(f"SESSION DISCONNECTED: event={raw_event}")
        background_tasks.add_task(wpp.full_reconnect)
        log_entry["status"] = "reconnecting"
        _log_webhook(log_entry)
        return {"status": "reconnecting"}

    dispatch_event = parse_webhook_event(data)
    if dispatch_event is None:
        log_entry["status"] = "ignored"
        _log_webhook(log_entry)
        return {"status": "ignored"}

    outcome = await dispatcher.handle(dispatch_event)
    if isinstance(dispatch_event, MessageCreated):
        log_entry["sender"] = dispatch_event.message.sender_id[:30]
        log_entry["chat_id"] = dispatch_event.message.chat_id
        _record(dispatch_event, outcome)

    log_entry["status"] = outcome
    _log_webhook(log_entry)
    return {"status": outcome}

if __name__ == "__main__":
    uvicorn.run("bot:app", host="0.0.0.0", port=PORT)
