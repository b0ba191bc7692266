# migrate_participant_status.py
import sqlite3

from init_db import DB, PARTICIPANT_STATUS_CHECK, create_trip_participants

KNOWN_STATUSES = ('joined', 'confirmed', 'accepted', 'active', 'pending')


def table_sql(conn, table):
    row = conn.execute("SELECT sql FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)).fetchone()
    return row[0] if row else None


def run(path=DB):
    """Rebuild trip_participants so its status constraint is the declared enumeration.

    sqlite cannot alter a CHECK constraint in place, so the table is copied
    into a fresh one. Rows with a status outside the enumeration become 'pending'.
    Returns the number of rows carried over, or None when nothing had to change.
    """
    conn = sqlite3.connect(path)
    c = conn.cursor()

    try:
        current = table_sql(conn, 'trip_participants')
        if current is None:
            print("trip_participants does not exist, run init_db.py first.")
            return None
        if PARTICIPANT_STATUS_CHECK in current:
            print("trip_participants already uses the declared status values.")
            return None

        c.execute('ALTER TABLE trip_participants RENAME TO trip_participants_legacy')
        create_trip_participants(c)
        c.execute(f'''
            INSERT INTO trip_participants (id, trip_id, user_id, status, joined_at)
            SELECT id, trip_id, user_id,
                   CASE WHEN status IN ({', '.join('?' for _ in KNOWN_STATUSES)}) THEN status ELSE 'pending' END,
                   joined_at
            FROM trip_participants_legacy
        ''', KNOWN_STATUSES)
        moved = c.rowcount
        c.execute('DROP TABLE trip_participants_legacy')
        conn.commit()
        print(f"trip_participants rebuilt, {moved} rows migrated.")
        return moved
    except sqlite3.OperationalError as e:
        conn.rollback()
        print(f"Error: {e}")
        raise
    finally:
        conn.close()


if __name__ == '__main__':
    run()
