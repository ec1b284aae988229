import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes", "on", "y"}


class Config:
    # --------------------------
    # 🔹 Flask Configuration
    # --------------------------
    SECRET_KEY = os.environ.get("SECRET_KEY", "secret123")
    PROPAGATE_EXCEPTIONS = False
    JSON_SORT_KEYS = False
    # Upload limit for database imports
    MAX_CONTENT_LENGTH = int(os.environ.get("MAX_IMPORT_BYTES", str(20 * 1024 * 1024)))

    # --------------------------
    # 🔹 Storage
    # --------------------------
    # sqlite   -> file-resident database (SQLALCHEMY_DATABASE_URI)
    # snapshot -> in-memory database, whole image saved under DATA_DIRECTORY after each write
    # flat     -> one JSON document per collection under DATA_DIRECTORY
    # auto     -> sqlite, falling back to flat when the engine cannot be opened
    FEE_STORAGE_BACKEND = os.environ.get("FEE_STORAGE_BACKEND", "sqlite")
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "SQLALCHEMY_DATABASE_URI",
        "sqlite:///instance/school_fees.db",
    )
    DATA_DIRECTORY = os.environ.get("DATA_DIRECTORY", "instance/data")
    LEGACY_DATA_DIRECTORY = os.environ.get("LEGACY_DATA_DIRECTORY", DATA_DIRECTORY)
    SNAPSHOT_KEY = os.environ.get("SNAPSHOT_KEY", "sqlite-db")

    # --------------------------
    # 🔹 Start-up data
    # --------------------------
    RUN_LEGACY_IMPORT = _flag("RUN_LEGACY_IMPORT", "1")
    SEED_DEFAULT_SERVICES = _flag("SEED_DEFAULT_SERVICES", "1")

    # --------------------------
    # 🔹 Export / backups
    # --------------------------
    BACKUP_DIRECTORY = os.environ.get("BACKUP_DIRECTORY", "instance/backups")
    try:
        BACKUP_KEEP_DAYS = int(os.environ.get("BACKUP_KEEP_DAYS", "60"))
    except ValueError:
        BACKUP_KEEP_DAYS = 60
    EXPORT_VERSION = os.environ.get("EXPORT_VERSION", "1.0.0")

    # --------------------------
    # 🔹 Other App Constants
    # --------------------------
    APP_NAME = os.environ.get("APP_NAME", "Ecole Fees")
    CURRENCY_LABEL = os.environ.get("CURRENCY_LABEL", "FCFA")
