import logging
from datetime import datetime, timezone
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from app.config import settings

logger = logging.getLogger(__name__)


def _connect_args(url: str) -> dict:
    # check_same_thread=False lets SQLite connections move between worker threads
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args(settings.DATABASE_URL),
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("devices", "sim_cards", "messages", "forward_settings")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from app import models  # noqa: F401

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and every table exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            logger.debug("Database connectivity OK")

        existing = set(inspect(engine).get_table_names())
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        if missing:
            logger.error("Database schema not applied", extra={"missing_tables": missing})
            return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_message(
    db: Session,
    device,
    sim_card,
    msg_type: str,
    raw_data: dict,
    phone_number: Optional[str] = None,
    body: Optional[str] = None,
    net_channel: Optional[int] = None,
    msg_ts: Optional[int] = None,
    sms_ts: Optional[int] = None,
    call_duration: Optional[int] = None,
    call_status: Optional[str] = None,
):
    """
    Add a message row to the caller's transaction.

    The caller owns the transaction: nothing is committed here, so the
    message lands together with the SIM card update or not at all.

    Returns:
        The flushed Message (primary key assigned)
    """
    from app.models import Message

    if sim_card.device_id != device.id:
        raise ValueError(
            f"SIM card {sim_card.id} does not belong to device {device.dev_id}"
        )

    message = Message(
        sim_card_id=sim_card.id,
        device_id=device.id,
        msg_type=msg_type,
        net_channel=net_channel,
        msg_ts=msg_ts,
        phone_number=phone_number,
        body=body,
        sms_ts=sms_ts,
        call_duration=call_duration,
        call_status=call_status,
        raw_data=raw_data,
        created_at=utcnow(),
    )
    db.add(message)
    db.flush()
    logger.debug(
        "Message staged",
        extra={"message_pk": message.id, "msg_type": msg_type, "dev_id": device.dev_id},
    )
    return message


def get_messages(
    db: Session,
    limit: int = 50,
    offset: int = 0,
    msg_type: Optional[str] = None,
    phone: Optional[str] = None,
    q: Optional[str] = None
) -> Tuple[list, int]:
    """
    Retrieve messages with pagination and filtering.

    Args:
        db: Database session
        limit: Maximum number of messages to return (1-100)
        offset: Number of messages to skip
        msg_type: Filter by message type (sms or call)
        phone: Filter by sender/caller number (substring)
        q: Free-text search in message body (case-insensitive)

    Returns:
        Tuple of (messages list, total count matching filters), newest first
    """
    from app.models import Message

    logger.info(f"Querying messages: limit={limit}, offset={offset}")
    logger.debug(f"Filters: msg_type={msg_type}, phone={phone}, q={q}")

    query = db.query(Message)

    if msg_type:
        query = query.filter(Message.msg_type == msg_type)

    if phone:
        query = query.filter(Message.phone_number.contains(phone))

    if q:
        query = query.filter(Message.body.ilike(f"%{q}%"))

    total = query.count()

    query = query.order_by(Message.created_at.desc(), Message.id.desc())
    messages = query.offset(offset).limit(limit).all()
    logger.info(f"Retrieved {len(messages)} of {total} total messages")

    return messages, total
