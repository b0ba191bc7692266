import json
import sqlite3
import time
from datetime import datetime

from flask import current_app

from errors import BackendError


def _connect():
    conn = sqlite3.connect(current_app.config['DATABASE'], timeout=10.0)
    conn.row_factory = sqlite3.Row
    # WAL for concurrent readers, foreign keys are off by default in sqlite
    conn.execute('PRAGMA journal_mode=WAL')
    conn.execute('PRAGMA foreign_keys = ON')
    return conn


def _run(query, args, fetch):
    max_retries = 3
    retry_delay = 0.5

    for attempt in range(max_retries):
        conn = cur = None
        try:
            conn = _connect()
            cur = conn.cursor()
            cur.execute(query, args)
            result = fetch(cur)
            conn.commit()
            return result
        except sqlite3.Error as e:
            # release the write lock even while the caller still holds the exception
            if conn is not None:
                conn.rollback()
            # "database is locked" is the only transient failure worth a retry
            if not isinstance(e, sqlite3.OperationalError) or 'locked' not in str(e) \
                    or attempt == max_retries - 1:
                raise
            time.sleep(retry_delay)
            retry_delay *= 2  # exponential backoff
        finally:
            if cur is not None:
                cur.close()
            if conn is not None:
                conn.close()


def query_db(query, args=(), one=False):
    rv = _run(query, args, lambda cur: cur.fetchall())
    return (rv[0] if rv else None) if one else rv


def execute_db(query, args=()):
    """Run an INSERT/UPDATE/DELETE and return the new row id."""
    return _run(query, args, lambda cur: cur.lastrowid)


def count_db(query, args=()):
    """Exact count for a ``SELECT COUNT(*) AS c ...`` query."""
    row = query_db(query, args, one=True)
    return row['c'] if row else 0


def placeholders(values):
    return ', '.join('?' for _ in values)


def now_iso():
    return datetime.now().isoformat()


def row_to_dict(row, json_fields=()):
    if row is None:
        return None
    d = dict(row)
    for field in json_fields:
        if field in d:
            d[field] = json.loads(d[field]) if d[field] else []
    return d


def classify_integrity_error(exc):
    """Map an IntegrityError to the constraint kind that rejected the write."""
    msg = str(exc).upper()
    if 'CHECK CONSTRAINT' in msg:
        return 'check'
    if 'UNIQUE CONSTRAINT' in msg:
        return 'unique'
    if 'FOREIGN KEY CONSTRAINT' in msg:
        return 'foreign_key'
    if 'NOT NULL CONSTRAINT' in msg:
        return 'not_null'
    return 'other'


_FRIENDLY = {
    'check': 'A value is not accepted by the database.',
    'unique': 'That record already exists.',
    'foreign_key': 'A referenced record does not exist.',
    'not_null': 'A required value is missing.',
}


def translate_integrity_error(exc):
    kind = classify_integrity_error(exc)
    msg = _FRIENDLY.get(kind, 'The database rejected the change.')
    status = 409 if kind == 'unique' else 400
    return BackendError(msg, kind=kind, status_code=status)
