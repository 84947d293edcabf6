import sys
from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError
from filevault.core.config import settings
from filevault.db import base
from filevault.db.session import engine, ensure_sqlite_indexes


def check_database_connection():
    """Kiểm tra kết nối Database (SQLite, MySQL hoặc PostgreSQL)"""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        print(f"Database connection failed: {e}")
        print("\nPlease check DATABASE_URL and that the server is running")
        return False
    print(f"Connected to {engine.url.render_as_string(hide_password=True)}")
    return True


def init_database():
    """Tạo tất cả tables"""
    print("\n Creating database tables...")
    try:
        base.Base.metadata.create_all(bind=engine)
        ensure_sqlite_indexes()
    except SQLAlchemyError as e:
        print(f" Error creating tables: {e}")
        sys.exit(1)
    tables = inspect(engine).get_table_names()
    print(f" Created tables: {', '.join(sorted(tables))}")


def show_storage_info():
    print("\n" + "=" * 60)
    print(" Storage Information")
    print("=" * 60)
    print(f"Backend: {settings.STORAGE_BACKEND}")
    if settings.STORAGE_BACKEND == "s3":
        print(f"Bucket:  {settings.AWS_BUCKET_NAME} ({settings.AWS_REGION})")
        print(f"SSE-KMS: {'on' if settings.STORAGE_ENCRYPTION_ENABLED else 'off'}")
    elif settings.STORAGE_BACKEND == "local":
        print(f"Directory: {settings.UPLOAD_DIR}")
    print(f"Scan engine: {settings.CLAMSCAN_PATH} (fail-open: {settings.SCAN_FAIL_OPEN})")


if __name__ == "__main__":
    print("\n" + "=" * 60)
    print(" Initializing FileVault Database")
    print("=" * 60)

    if not check_database_connection():
        sys.exit(1)

    init_database()
    show_storage_info()

    print("\nNext steps:")
    print("1. Install: pip install -e .")
    print("2. Start server: python -m filevault.main")
    print("3. API Docs: http://localhost:8000/docs")
    print()
