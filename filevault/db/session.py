from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import declarative_base, sessionmaker
from filevault.core.config import settings

db_url = settings.DATABASE_URL

if db_url.startswith("sqlite"):
    # SQLite settings
    engine = create_engine(
        db_url,
        echo=settings.DB_ECHO,
        connect_args={"check_same_thread": False}
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, _):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()
else:
    # MySQL/PostgreSQL settings
    connect_args = {"charset": "utf8mb4", "use_unicode": True} if db_url.startswith("mysql") else {}
    engine = create_engine(
        db_url,
        pool_pre_ping=True,  # Kiểm tra connection trước khi sử dụng
        pool_recycle=3600,
        echo=settings.DB_ECHO,
        connect_args=connect_args
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

Base = declarative_base()


def ensure_sqlite_indexes(bind=None):
    """Create indexes for SQLite to speed up common queries."""
    bind = bind or engine
    if not str(bind.url).startswith("sqlite"):
        return
    index_statements = [
        "CREATE INDEX IF NOT EXISTS idx_files_owner_updated ON files (owner_id, updated_at)",
        "CREATE INDEX IF NOT EXISTS idx_files_owner_status ON files (owner_id, status)",
        "CREATE INDEX IF NOT EXISTS idx_file_shares_user_expires ON file_shares (user_id, expires_at)",
    ]
    with bind.begin() as conn:
        for stmt in index_statements:
            conn.execute(text(stmt))


def get_db():
    """Dependency để lấy database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
