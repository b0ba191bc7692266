import sqlite3

DB = 'moto_log.db'

# Declared participant enumeration; trips.py negotiates against older databases
PARTICIPANT_STATUS_CHECK = "status IN ('joined', 'confirmed', 'accepted', 'active', 'pending')"

TABLES = [
    'media_files', 'notifications', 'chat_messages', 'chat_participants', 'chat_rooms',
    'trip_chat_messages', 'trip_participants', 'group_trips', 'user_followers',
    'post_comments', 'post_likes', 'user_posts', 'user_adventures', 'user_bikes',
    'user_stats', 'user_profiles', 'auth_users',
]


def create_trip_participants(c, status_check=PARTICIPANT_STATUS_CHECK):
    c.execute(f'''
        CREATE TABLE IF NOT EXISTS trip_participants (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            trip_id INTEGER NOT NULL,
            user_id INTEGER NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending' CHECK ({status_check}),
            joined_at TEXT NOT NULL,
            UNIQUE(trip_id, user_id),
            FOREIGN KEY (trip_id) REFERENCES group_trips (id) ON DELETE CASCADE,
            FOREIGN KEY (user_id) REFERENCES auth_users (id) ON DELETE CASCADE
        )
    ''')


def init_db(path=DB, reset=False):
    conn = sqlite3.connect(path)
    c = conn.cursor()

    if reset:
        # WARNING: destroys data
        for table in TABLES:
            c.execute(f'DROP TABLE IF EXISTS {table}')

    # Identities, kept apart from the public profile
    c.execute('''
        CREATE TABLE IF NOT EXISTS auth_users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT UNIQUE NOT NULL,
            password TEXT,
            provider TEXT NOT NULL DEFAULT 'email',
            metadata TEXT,
            created_at TEXT NOT NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS user_profiles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER UNIQUE NOT NULL,
            username TEXT UNIQUE NOT NULL,
            display_name TEXT NOT NULL,
            bio TEXT,
            avatar_url TEXT,
            location TEXT,
            experience TEXT,
            favorite_type TEXT,
            website_url TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES auth_users (id) ON DELETE CASCADE
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS user_stats (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER UNIQUE NOT NULL,
            total_miles REAL DEFAULT 0,
            total_adventures INTEGER DEFAULT 0,
            total_posts INTEGER DEFAULT 0,
            followers_count INTEGER DEFAULT 0,
            following_count INTEGER DEFAULT 0,
            riding_hours_total REAL DEFAULT 0,
            updated_at TEXT,
            FOREIGN KEY (user_id) REFERENCES auth_users (id) ON DELETE CASCADE
        )
    ''')

    # Garage - a rider can have many bikes, one of them primary
    c.execute('''
        CREATE TABLE IF NOT EXISTS user_bikes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            brand TEXT,
            model TEXT,
            year INTEGER,
            color TEXT,
            engine_size TEXT,
            image_url TEXT,
            mileage REAL,
            is_primary INTEGER DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES auth_users (id) ON DELETE CASCADE
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS user_adventures (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            start_date TEXT NOT NULL,
            end_date TEXT,
            distance REAL,
            duration_days INTEGER,
            difficulty TEXT,
            route_type TEXT,
            images TEXT,
            total_riding_hours REAL,
            is_public INTEGER DEFAULT 1,
            featured INTEGER DEFAULT 0,
            created_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES auth_users (id) ON DELETE CASCADE
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS user_posts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            caption TEXT,
            images TEXT,
            location TEXT,
            tags TEXT,
            adventure_id INTEGER,
            bike_id INTEGER,
            likes_count INTEGER DEFAULT 0,
            comments_count INTEGER DEFAULT 0,
            shares_count INTEGER DEFAULT 0,
            is_public INTEGER DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES auth_users (id) ON DELETE CASCADE,
            FOREIGN KEY (adventure_id) REFERENCES user_adventures (id) ON DELETE SET NULL,
            FOREIGN KEY (bike_id) REFERENCES user_bikes (id) ON DELETE SET NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS post_likes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            post_id INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(user_id, post_id),
            FOREIGN KEY (user_id) REFERENCES auth_users (id) ON DELETE CASCADE,
            FOREIGN KEY (post_id) REFERENCES user_posts (id) ON DELETE CASCADE
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS post_comments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            post_id INTEGER NOT NULL,
            user_id INTEGER NOT NULL,
            comment TEXT NOT NULL,
            parent_comment_id INTEGER,
            created_at TEXT NOT NULL,
            FOREIGN KEY (post_id) REFERENCES user_posts (id) ON DELETE CASCADE,
            FOREIGN KEY (user_id) REFERENCES auth_users (id) ON DELETE CASCADE,
            FOREIGN KEY (parent_comment_id) REFERENCES post_comments (id) ON DELETE CASCADE
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS user_followers (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            follower_id INTEGER NOT NULL,
            following_id INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(follower_id, following_id),
            FOREIGN KEY (follower_id) REFERENCES auth_users (id) ON DELETE CASCADE,
            FOREIGN KEY (following_id) REFERENCES auth_users (id) ON DELETE CASCADE
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS group_trips (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            organizer_id INTEGER NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            start_date TEXT,
            end_date TEXT,
            start_location TEXT,
            end_location TEXT,
            distance INTEGER,
            difficulty TEXT,
            max_participants INTEGER NOT NULL DEFAULT 10,
            current_participants INTEGER DEFAULT 0,
            estimated_cost TEXT,
            requirements TEXT,
            included_services TEXT,
            waypoints TEXT,
            fuel_stops TEXT,
            accommodation_type TEXT,
            meals_included INTEGER DEFAULT 0,
            emergency_contact TEXT,
            images TEXT,
            status TEXT NOT NULL DEFAULT 'open'
                CHECK (status IN ('open', 'full', 'in_progress', 'completed', 'cancelled')),
            is_public INTEGER DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (organizer_id) REFERENCES auth_users (id) ON DELETE CASCADE
        )
    ''')

    create_trip_participants(c)

    c.execute('''
        CREATE TABLE IF NOT EXISTS trip_chat_messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            trip_id INTEGER NOT NULL,
            sender_id INTEGER NOT NULL,
            message TEXT NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (trip_id) REFERENCES group_trips (id) ON DELETE CASCADE,
            FOREIGN KEY (sender_id) REFERENCES auth_users (id) ON DELETE CASCADE
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS chat_rooms (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            description TEXT,
            is_group INTEGER DEFAULT 1,
            created_by INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (created_by) REFERENCES auth_users (id)
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS chat_participants (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            room_id INTEGER NOT NULL,
            user_id INTEGER NOT NULL,
            is_admin INTEGER DEFAULT 0,
            last_read TEXT,
            added_at TEXT NOT NULL,
            UNIQUE(room_id, user_id),
            FOREIGN KEY (room_id) REFERENCES chat_rooms (id) ON DELETE CASCADE,
            FOREIGN KEY (user_id) REFERENCES auth_users (id) ON DELETE CASCADE
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS chat_messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            room_id INTEGER NOT NULL,
            sender_id INTEGER NOT NULL,
            content TEXT NOT NULL,
            message_type TEXT DEFAULT 'text',
            media_url TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY (room_id) REFERENCES chat_rooms (id) ON DELETE CASCADE,
            FOREIGN KEY (sender_id) REFERENCES auth_users (id)
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS notifications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            actor_id INTEGER,
            type TEXT NOT NULL,
            title TEXT,
            message TEXT,
            entity_type TEXT,
            entity_id INTEGER,
            is_read INTEGER DEFAULT 0,
            created_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES auth_users (id) ON DELETE CASCADE,
            FOREIGN KEY (actor_id) REFERENCES auth_users (id) ON DELETE SET NULL
        )
    ''')

    c.execute('''
        CREATE TABLE IF NOT EXISTS media_files (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            filename TEXT NOT NULL,
            original_name TEXT,
            file_size INTEGER,
            mime_type TEXT,
            storage_path TEXT NOT NULL,
            public_url TEXT,
            bucket TEXT NOT NULL,
            entity_type TEXT,
            is_public INTEGER DEFAULT 1,
            created_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES auth_users (id) ON DELETE CASCADE
        )
    ''')

    conn.commit()
    conn.close()
    print("Database initialized.")


if __name__ == '__main__':
    init_db()
