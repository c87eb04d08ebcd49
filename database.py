import sqlite3
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

from data_paths import ensure_data_root

DATABASE_FILENAME = 'garageledger.db'


def database_file() -> Path:
    return ensure_data_root() / DATABASE_FILENAME


def get_db_connection(timeout: float = 30.0):
    """Establishes a connection to the SQLite database."""
    conn = sqlite3.connect(str(database_file()), timeout=timeout, isolation_level='DEFERRED')
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA cache_size=10000;")
        conn.execute("PRAGMA temp_store=MEMORY;")
    except sqlite3.Error as e:
        logger.warning(f"Could not set PRAGMA settings: {e}")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.row_factory = sqlite3.Row
    return conn


def init_db():
    """Initializes the database schema."""
    conn = get_db_connection()
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS app_settings (
            organization_id TEXT NOT NULL,
            key TEXT NOT NULL,
            value TEXT,
            PRIMARY KEY (organization_id, key)
        );
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS vehicles (
            id TEXT PRIMARY KEY NOT NULL,
            make TEXT NOT NULL,
            model TEXT NOT NULL,
            year INTEGER NOT NULL,
            license_plate TEXT,
            fuel_type TEXT,
            mileage INTEGER DEFAULT 0,
            purchase_price REAL,
            image_url TEXT,
            user_id TEXT NOT NULL,
            organization_id TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """)
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_vehicles_org ON vehicles(organization_id)")

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS customers (
            id TEXT PRIMARY KEY NOT NULL,
            name TEXT NOT NULL,
            email TEXT,
            phone TEXT,
            address TEXT,
            notes TEXT,
            user_id TEXT NOT NULL,
            organization_id TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS notes (
            id TEXT PRIMARY KEY NOT NULL,
            title TEXT,
            content TEXT,
            is_pinned INTEGER NOT NULL DEFAULT 0,
            vehicle_id TEXT NOT NULL REFERENCES vehicles(id),
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS service_records (
            id TEXT PRIMARY KEY NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            invoice_notes TEXT,
            type TEXT NOT NULL DEFAULT 'repair',
            status TEXT NOT NULL DEFAULT 'completed',
            cost REAL NOT NULL DEFAULT 0,
            mileage INTEGER,
            service_date TEXT,
            invoice_number TEXT,
            subtotal REAL NOT NULL DEFAULT 0,
            discount_type TEXT,
            discount_value REAL NOT NULL DEFAULT 0,
            discount_amount REAL NOT NULL DEFAULT 0,
            tax_rate REAL NOT NULL DEFAULT 0,
            tax_amount REAL NOT NULL DEFAULT 0,
            total_amount REAL NOT NULL DEFAULT 0,
            vehicle_id TEXT NOT NULL REFERENCES vehicles(id),
            customer_id TEXT REFERENCES customers(id),
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """)
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_service_records_vehicle ON service_records(vehicle_id)")

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS service_parts (
            id TEXT PRIMARY KEY NOT NULL,
            name TEXT NOT NULL,
            quantity REAL NOT NULL DEFAULT 1,
            unit_price REAL NOT NULL DEFAULT 0,
            total REAL NOT NULL DEFAULT 0,
            service_record_id TEXT NOT NULL REFERENCES service_records(id)
        );
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS service_labor (
            id TEXT PRIMARY KEY NOT NULL,
            description TEXT NOT NULL,
            hours REAL NOT NULL DEFAULT 0,
            rate REAL NOT NULL DEFAULT 0,
            total REAL NOT NULL DEFAULT 0,
            service_record_id TEXT NOT NULL REFERENCES service_records(id)
        );
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS service_attachments (
            id TEXT PRIMARY KEY NOT NULL,
            file_name TEXT NOT NULL,
            file_url TEXT NOT NULL,
            file_type TEXT NOT NULL,
            file_size INTEGER NOT NULL,
            category TEXT NOT NULL,
            service_record_id TEXT NOT NULL REFERENCES service_records(id)
        );
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS payments (
            id TEXT PRIMARY KEY NOT NULL,
            amount REAL NOT NULL,
            date TEXT,
            method TEXT NOT NULL,
            note TEXT,
            external_id TEXT,
            service_record_id TEXT NOT NULL REFERENCES service_records(id)
        );
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS inventory_parts (
            id TEXT PRIMARY KEY NOT NULL,
            name TEXT NOT NULL,
            description TEXT,
            unit_cost REAL NOT NULL DEFAULT 0,
            quantity INTEGER NOT NULL DEFAULT 0,
            part_number TEXT,
            supplier_url TEXT,
            image_url TEXT,
            user_id TEXT NOT NULL,
            organization_id TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS quotes (
            id TEXT PRIMARY KEY NOT NULL,
            quote_number TEXT NOT NULL,
            title TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'draft',
            subtotal REAL NOT NULL DEFAULT 0,
            discount_type TEXT,
            discount_value REAL NOT NULL DEFAULT 0,
            discount_amount REAL NOT NULL DEFAULT 0,
            tax_rate REAL NOT NULL DEFAULT 0,
            tax_amount REAL NOT NULL DEFAULT 0,
            total_amount REAL NOT NULL DEFAULT 0,
            valid_until TEXT,
            notes TEXT,
            customer_id TEXT REFERENCES customers(id),
            user_id TEXT NOT NULL,
            organization_id TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS quote_parts (
            id TEXT PRIMARY KEY NOT NULL,
            name TEXT NOT NULL,
            quantity REAL NOT NULL DEFAULT 1,
            unit_price REAL NOT NULL DEFAULT 0,
            total REAL NOT NULL DEFAULT 0,
            quote_id TEXT NOT NULL REFERENCES quotes(id)
        );
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS quote_labor (
            id TEXT PRIMARY KEY NOT NULL,
            description TEXT NOT NULL,
            hours REAL NOT NULL DEFAULT 0,
            rate REAL NOT NULL DEFAULT 0,
            total REAL NOT NULL DEFAULT 0,
            quote_id TEXT NOT NULL REFERENCES quotes(id)
        );
    """)

    conn.commit()
    conn.close()
    logger.info("Database schema ensured at %s", database_file())


def get_app_setting(conn: sqlite3.Connection, organization_id: str, key: str, default: Optional[str] = None) -> Optional[str]:
    """Return a tenant setting value, or ``default`` when unset or blank."""
    row = conn.execute(
        "SELECT value FROM app_settings WHERE organization_id = ? AND key = ?",
        (organization_id, key),
    ).fetchone()
    if row is None or not row["value"]:
        return default
    return row["value"]
