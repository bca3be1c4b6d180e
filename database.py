# database.py
# SQLite storage for the shop: connection helper, schema creation and seed data.

import sqlite3
import datetime
import json

from config import Config
from extensions import bcrypt

DB_NAME = Config.DATABASE

# Child tables first, so they can be dropped in this order.
TABLES = (
    "user_activity_logs",
    "user_payment_methods",
    "payments",
    "order_items",
    "orders",
    "products",
    "categories",
    "banners",
    "static_pages",
    "email_templates",
    "system_settings",
    "users",
)

SCHEMA = (
    '''
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        email TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        phone TEXT,
        address TEXT,
        role TEXT NOT NULL DEFAULT 'customer' CHECK (role IN ('customer', 'admin')),
        reset_code TEXT,
        reset_code_expires TEXT,
        google_id TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS categories (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT UNIQUE NOT NULL,
        description TEXT,
        image TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS products (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        description TEXT,
        price REAL NOT NULL CHECK (price > 0),
        stock INTEGER NOT NULL DEFAULT 0 CHECK (stock >= 0),
        image_url TEXT,
        category_id INTEGER,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE SET NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS orders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        total_amount REAL NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        payment_status TEXT NOT NULL DEFAULT 'pending',
        payment_tx_ref TEXT,
        shipping_address TEXT NOT NULL,
        customer_name TEXT,
        customer_email TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (user_id) REFERENCES users(id)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS order_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id INTEGER NOT NULL,
        product_id INTEGER NOT NULL,
        quantity INTEGER NOT NULL CHECK (quantity > 0),
        price REAL NOT NULL,
        FOREIGN KEY (order_id) REFERENCES orders(id) ON DELETE CASCADE,
        FOREIGN KEY (product_id) REFERENCES products(id)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS payments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id INTEGER NOT NULL,
        amount REAL NOT NULL,
        payment_method TEXT NOT NULL DEFAULT 'chapa',
        transaction_id TEXT UNIQUE NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        gateway_response TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (order_id) REFERENCES orders(id) ON DELETE CASCADE
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS user_payment_methods (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        type TEXT NOT NULL CHECK (type IN ('card', 'bank', 'mobile')),
        provider TEXT NOT NULL DEFAULT 'chapa',
        last4 TEXT,
        brand TEXT,
        expiry_month INTEGER,
        expiry_year INTEGER,
        is_default INTEGER NOT NULL DEFAULT 0,
        chapa_token TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS user_activity_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        action TEXT NOT NULL,
        details TEXT,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS banners (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        description TEXT,
        image TEXT NOT NULL,
        link TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS static_pages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        slug TEXT UNIQUE NOT NULL,
        title TEXT NOT NULL,
        content TEXT NOT NULL,
        is_published INTEGER NOT NULL DEFAULT 0,
        meta_title TEXT,
        meta_description TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS email_templates (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT UNIQUE NOT NULL,
        subject TEXT NOT NULL,
        body TEXT NOT NULL,
        variables TEXT NOT NULL DEFAULT '[]',
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS system_settings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        key TEXT UNIQUE NOT NULL,
        value TEXT NOT NULL,
        description TEXT,
        category TEXT NOT NULL DEFAULT 'general',
        is_public INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    ''',
)

DEFAULT_SETTINGS = (
    # key, value, description, category, is_public
    ("store_name", Config.STORE_NAME, "Name shown in the storefront", "general", 1),
    ("currency", Config.CHAPA_CURRENCY, "Currency used for prices and payments", "payments", 1),
    ("contact_email", Config.ADMIN_EMAIL, "Public support address", "general", 1),
    ("low_stock_threshold", str(Config.LOW_STOCK_THRESHOLD), "Stock level that triggers alerts", "inventory", 0),
)

DEFAULT_EMAIL_TEMPLATES = (
    (
        "password_reset",
        "Password Reset Code",
        "<h2>Password Reset</h2>"
        "<p>You requested a password reset for your account.</p>"
        "<p>Your 4-digit reset code is: <strong>{{code}}</strong></p>"
        "<p>This code will expire in {{minutes}} minutes.</p>"
        "<p>If you didn't request this, please ignore this email.</p>",
        ["code", "minutes"],
    ),
    (
        "order_confirmation",
        "Order #{{order_id}} confirmed",
        "<h2>Thank you, {{name}}!</h2>"
        "<p>We received your payment of {{total}} {{currency}} for order #{{order_id}}.</p>"
        "<p>We will let you know when it ships.</p>",
        ["name", "order_id", "total", "currency"],
    ),
)


def get_db_connection():
    """Creates a connection to the SQLite database."""
    conn = sqlite3.connect(DB_NAME, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def utcnow():
    """Current UTC time in the same text form SQLite's CURRENT_TIMESTAMP uses."""
    return datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def row_to_dict(row, bool_fields=(), json_fields=()):
    if row is None:
        return None
    data = dict(row)
    for field in bool_fields:
        if field in data and data[field] is not None:
            data[field] = bool(data[field])
    for field in json_fields:
        if data.get(field):
            data[field] = json.loads(data[field])
    return data


def create_admin(conn, email, password, name="Admin User"):
    """Creates an admin account, or promotes the existing account with that email.

    Returns True when a new user row was inserted.
    """
    existing = conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone()
    if existing:
        conn.execute(
            "UPDATE users SET role = 'admin', updated_at = ? WHERE id = ?",
            (utcnow(), existing["id"]),
        )
        return False
    password_hash = bcrypt.generate_password_hash(password).decode('utf-8')
    conn.execute(
        "INSERT INTO users (name, email, password_hash, role) VALUES (?, ?, ?, 'admin')",
        (name, email, password_hash),
    )
    return True


def init_db():
    """Initializes the database: creates tables, the default admin, settings and templates."""
    conn = get_db_connection()
    cursor = conn.cursor()
    print("Initializing database...")

    for statement in SCHEMA:
        cursor.execute(statement)

    # Create a default admin user if none exists
    cursor.execute("SELECT id FROM users WHERE role = 'admin'")
    if not cursor.fetchone():
        print("!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!")
        print("!!! No admin user found. Creating default admin...")
        create_admin(conn, Config.ADMIN_EMAIL, Config.ADMIN_PASSWORD)
        print(f"!!! Default admin created with email: '{Config.ADMIN_EMAIL}'")
        print("!!! PLEASE LOG IN AND CHANGE THE DEFAULT PASSWORD.")
        print("!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!")

    cursor.executemany(
        "INSERT OR IGNORE INTO system_settings (key, value, description, category, is_public) VALUES (?, ?, ?, ?, ?)",
        DEFAULT_SETTINGS,
    )
    cursor.executemany(
        "INSERT OR IGNORE INTO email_templates (name, subject, body, variables) VALUES (?, ?, ?, ?)",
        [(name, subject, body, json.dumps(variables)) for name, subject, body, variables in DEFAULT_EMAIL_TEMPLATES],
    )

    conn.commit()
    conn.close()
    print("Database initialized successfully.")


def drop_all():
    conn = get_db_connection()
    for table in TABLES:
        conn.execute(f"DROP TABLE IF EXISTS {table}")
    conn.commit()
    conn.close()
