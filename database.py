from sqlalchemy import create_engine, Column, Integer, String, DateTime
from sqlalchemy.orm import declarative_base, sessionmaker
from datetime import datetime
import logging
import os

logger = logging.getLogger(__name__)

# Database URL checks if running in container or local
if os.getenv("DATABASE_URL"):
    DATABASE_URL = os.getenv("DATABASE_URL")
elif os.path.exists("/data") and os.access("/data", os.W_OK):
    DATABASE_URL = "sqlite:////data/moderador.db"
else:
    DATABASE_URL = "sqlite:///./moderador.db" # Fallback for local testing

_is_sqlite = DATABASE_URL.startswith("sqlite")

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30} if _is_sqlite else {},
    pool_pre_ping=True,
)

# WAL mode so the admin API can read while the webhook writes
from sqlalchemy import event as sa_event
if _is_sqlite:
    @sa_event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.close()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

class ModerationAction(Base):
    """Audit trail of executed commands. The muted set is never rebuilt from it."""
    __tablename__ = "moderation_actions"

    id = Column(Integer, primary_key=True, index=True)
    chat_id = Column(String, index=True)     # Group ID (e.g., 1203630234234@g.us)
    sender_id = Column(String, index=True)   # WhatsApp ID (e.g., 5511999999999@c.us)
    command = Column(String, default="")     # Raw command token (.mute, .todos, ...)
    outcome = Column(String, default="")     # Dispatcher status (muted, denied, usage, ...)
    target_id = Column(String, default="")   # First mentioned participant, if any
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

# Outcomes worth keeping; ordinary chatter and mute deletions are not logged
LOGGED_OUTCOMES = {
    "muted", "unmuted", "not_muted", "notified_tagged", "notified_silent",
    "denied", "usage", "groups_only",
}

def init_db():
    Base.metadata.create_all(bind=engine)

def record_action(chat_id: str, sender_id: str, command: str, outcome: str, target_id: str = "") -> bool:
    """Persist one command outcome. Returns False (and logs) on database errors."""
    if outcome not in LOGGED_OUTCOMES:
        return False
    db = SessionLocal()
    try:
        db.add(ModerationAction(
            chat_id=chat_id,
            sender_id=sender_id,
            command=command,
            outcome=outcome,
            target_id=target_id,
        ))
        db.commit()
        return True
    except Exception as e:
        logger.error(f"Error recording action {outcome} in {chat_id}: {e}")
        db.rollback()
        return False
    finally:
        db.close()

def recent_actions(limit: int = 50) -> list:
    db = SessionLocal()
    try:
        rows = db.query(ModerationAction).order_by(ModerationAction.id.desc()).limit(limit).all()
        return [
            {
                "id": r.id,
                "chat_id": r.chat_id,
                "sender_id": r.sender_id,
                "command": r.command,
                "outcome": r.outcome,
                "target_id": r.target_id,
                "created_at": r.created_at.isoformat() if r.created_at else None,
            }
            for r in rows
        ]
    finally:
        db.close()
