from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, scoped_session, sessionmaker

from ..config import get_settings

# Load environment variables
load_dotenv()

DATABASE_URL = get_settings().DATABASE_URL

# Create SQLAlchemy engine
engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
)

# Create a scoped session factory
SessionLocal = scoped_session(sessionmaker(autocommit=False, autoflush=False, bind=engine))

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db(bind=None) -> None:
    """Create all tables on the given engine (defaults to the app engine)."""
    # Import models so they are registered on Base.metadata
    from ..models import sql_models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
