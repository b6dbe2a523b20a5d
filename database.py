import sqlite3

from dotenv import load_dotenv

# Make sure .env is loaded before config is read (library -> database -> config).
load_dotenv()

from config import settings

# Default database file. Tests and callers may override it by assigning
# database.DATABASE_FILE before the tables are initialized.
DATABASE_FILE = settings.data_file

# Current UTC time in the isoformat() shape the ledger writes
ISO_NOW = "strftime('%Y-%m-%dT%H:%M:%S+00:00', 'now')"


def get_db_connection() -> sqlite3.Connection:
    """Open a new SQLite connection with dict-like rows.

    Connections are per-operation; callers close them in a finally block.
    Writes open with BEGIN IMMEDIATE so competing writers queue on the busy
    timeout instead of failing on a lock upgrade.
    """
    conn = sqlite3.connect(DATABASE_FILE, timeout=settings.database_timeout, isolation_level="IMMEDIATE")
    conn.row_factory = sqlite3.Row
    return conn


def create_tables() -> None:
    """Create the books, profiles and loans tables if they do not exist."""
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        # WAL lets catalog reads continue while a borrow or return commits
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                is_borrowed BOOLEAN NOT NULL DEFAULT 0,
                borrowed_by TEXT,
                borrowed_at TEXT,
                ai_summary TEXT,
                ai_tags TEXT,
                total_quantity INTEGER NOT NULL DEFAULT 1 CHECK(total_quantity >= 1),
                available_quantity INTEGER NOT NULL DEFAULT 1
                    CHECK(available_quantity >= 0 AND available_quantity <= total_quantity),
                created_at TIMESTAMP DEFAULT ({ISO_NOW})
            )
        """.format(ISO_NOW=ISO_NOW))

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS profiles (
                id TEXT PRIMARY KEY,
                full_name TEXT,
                email TEXT,
                phone TEXT,
                role TEXT NOT NULL DEFAULT 'member'
                    CHECK(role IN ('admin', 'librarian', 'member'))
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS loans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id TEXT NOT NULL,
                borrower_id TEXT NOT NULL,
                borrowed_at TEXT NOT NULL,
                returned_at TEXT
            )
        """)

        _migrate_books_table(cursor)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_author ON books(author)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_created_at ON books(created_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_book_id ON loans(book_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_open ON loans(book_id, returned_at)")

        conn.commit()
    finally:
        conn.close()


def _migrate_books_table(cursor: sqlite3.Cursor) -> None:
    """Add columns missing from books tables created before stock tracking."""
    cursor.execute("PRAGMA table_info(books)")
    columns = [column[1] for column in cursor.fetchall()]

    if 'ai_summary' not in columns:
        cursor.execute("ALTER TABLE books ADD COLUMN ai_summary TEXT")
    if 'ai_tags' not in columns:
        cursor.execute("ALTER TABLE books ADD COLUMN ai_tags TEXT")  # JSON array
    if 'is_borrowed' not in columns:
        cursor.execute("ALTER TABLE books ADD COLUMN is_borrowed BOOLEAN NOT NULL DEFAULT 0")
    if 'borrowed_by' not in columns:
        cursor.execute("ALTER TABLE books ADD COLUMN borrowed_by TEXT")
    if 'borrowed_at' not in columns:
        cursor.execute("ALTER TABLE books ADD COLUMN borrowed_at TEXT")
    if 'total_quantity' not in columns:
        cursor.execute("ALTER TABLE books ADD COLUMN total_quantity INTEGER NOT NULL DEFAULT 1")
    if 'available_quantity' not in columns:
        # Single-copy rows: a borrowed book has nothing left on the shelf.
        cursor.execute("ALTER TABLE books ADD COLUMN available_quantity INTEGER")
        cursor.execute(
            "UPDATE books SET available_quantity = CASE WHEN is_borrowed THEN 0 ELSE total_quantity END "
            "WHERE available_quantity IS NULL"
        )
        # The recorded borrower of a lent single-copy row must be able to return it.
        cursor.execute(f"""
            INSERT INTO loans (book_id, borrower_id, borrowed_at)
            SELECT id, borrowed_by, COALESCE(borrowed_at, {ISO_NOW})
            FROM books
            WHERE is_borrowed AND borrowed_by IS NOT NULL
              AND id NOT IN (SELECT book_id FROM loans WHERE returned_at IS NULL)
        """)
    if 'created_at' not in columns:
        # SQLite cannot add a column with a non-constant default, so backfill instead.
        cursor.execute("ALTER TABLE books ADD COLUMN created_at TIMESTAMP")
        cursor.execute(f"UPDATE books SET created_at = {ISO_NOW} WHERE created_at IS NULL")

    # CURRENT_TIMESTAMP values ('YYYY-MM-DD HH:MM:SS', UTC) to the ISO form new rows use
    cursor.execute(
        "UPDATE books SET created_at = replace(created_at, ' ', 'T') || '+00:00' "
        "WHERE created_at GLOB '[0-9][0-9][0-9][0-9]-[0-9][0-9]-[0-9][0-9] [0-9][0-9]:[0-9][0-9]:[0-9][0-9]'"
    )


def initialize_database():
    """Initialize the database, creating and migrating tables as needed."""
    create_tables()
