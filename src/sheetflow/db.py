from pathlib import Path
from sqlmodel import SQLModel, create_engine, Session
from sheetflow.config import settings
from sheetflow.logging import logger

DATA_DIR = Path("data")


def build_engine(url: str = settings.DATABASE_URL):
    """Create an engine; SQLite gets the busy timeout, other backends a connect timeout."""
    if url.startswith("sqlite"):
        connect_args = {"timeout": settings.DB_TIMEOUT_SECONDS, "check_same_thread": False}
    else:
        connect_args = {"connect_timeout": int(settings.DB_TIMEOUT_SECONDS)}
    return create_engine(url, echo=False, connect_args=connect_args)


engine = build_engine()

def init_db():
    if settings.DATABASE_URL.startswith("sqlite:///") and not DATA_DIR.exists():
        DATA_DIR.mkdir(exist_ok=True)

    # Import all models here so SQLModel knows about them
    # This is critical for create_all to work
    from sheetflow.models import core, timesheet, approval, billing, audit  # noqa: F401

    logger.info(f"Initializing database at {settings.DATABASE_URL}")
    SQLModel.metadata.create_all(engine)

def get_session():
    with Session(engine) as session:
        yield session
