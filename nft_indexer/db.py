import pathlib
import sqlite3

from nft_indexer import config

SCHEMA_PATH = pathlib.Path(__file__).with_name("schema.sql")

def db(path: str = None):
    path = path or config.DB_PATH
    conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    if path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA temp_store=MEMORY;")
    return conn

def ensure_schema(conn: sqlite3.Connection):
    # read SQL shipped next to this module
    conn.executescript(SCHEMA_PATH.read_text(encoding="utf-8"))
