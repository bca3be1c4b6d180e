import json
import os
import shutil
import tempfile
import unittest

import database
from app import app as flask_app
from database import drop_all, get_db_connection, init_db
from extensions import bcrypt

TEST_DB_NAME = "test_ecom_ethiopia.db"

ADMIN_EMAIL = "testadmin@example.com"
USER_EMAIL = "testuser@example.com"
PASSWORD = "Testpass1!"


class ApiTestCase(unittest.TestCase):
    """Runs every test against a fresh sqlite file with one admin and one customer."""

    @classmethod
    def setUpClass(cls):
        cls.original_db_name = database.DB_NAME
        database.DB_NAME = TEST_DB_NAME

        flask_app.config['TESTING'] = True
        flask_app.config['JWT_SECRET_KEY'] = 'test_secret_key_that_is_long_enough_for_hs256'
        flask_app.config['BCRYPT_LOG_ROUNDS'] = 4
        flask_app.config['MAIL_SERVER'] = None
        flask_app.config['CHAPA_SECRET_KEY'] = 'CHASECK_TEST-secret'
        flask_app.config['CHAPA_WEBHOOK_SECRET'] = None
        flask_app.config['BACKEND_URL'] = 'http://api.test'
        flask_app.config['FRONTEND_URL'] = 'http://shop.test'
        flask_app.config['GOOGLE_CLIENT_ID'] = 'test-client.apps.googleusercontent.com'
        cls.upload_dir = tempfile.mkdtemp()
        flask_app.config['UPLOAD_FOLDER'] = cls.upload_dir
        bcrypt.init_app(flask_app)
        cls.client = flask_app.test_client()

    @classmethod
    def tearDownClass(cls):
        database.DB_NAME = cls.original_db_name
        if os.path.exists(TEST_DB_NAME):
            os.remove(TEST_DB_NAME)
        shutil.rmtree(cls.upload_dir, ignore_errors=True)

    def setUp(self):
        init_db()
        conn = get_db_connection()
        password_hash = bcrypt.generate_password_hash(PASSWORD).decode('utf-8')
        conn.execute(
            "INSERT INTO users (name, email, password_hash, phone, address, role) VALUES (?, ?, ?, ?, ?, 'admin')",
            ('Test Admin', ADMIN_EMAIL, password_hash, '0911000000', 'Addis Ababa'),
        )
        conn.execute(
            "INSERT INTO users (name, email, password_hash, phone, address, role) VALUES (?, ?, ?, ?, ?, 'customer')",
            ('Test User', USER_EMAIL, password_hash, '0911111111', 'Bole, Addis Ababa'),
        )
        conn.commit()
        self.admin_id = conn.execute("SELECT id FROM users WHERE email = ?", (ADMIN_EMAIL,)).fetchone()['id']
        self.user_id = conn.execute("SELECT id FROM users WHERE email = ?", (USER_EMAIL,)).fetchone()['id']
        conn.close()

    def tearDown(self):
        drop_all()

    # --- Helpers ---
    def _json(self, response):
        return json.loads(response.data.decode())

    def _login(self, email, password=PASSWORD):
        response = self.client.post('/api/auth/login', json={'email': email, 'password': password})
        data = self._json(response)
        self.assertIn('access_token', data, f"Failed to log in as {email}")
        return data['access_token']

    def _admin_headers(self):
        return {'Authorization': f'Bearer {self._login(ADMIN_EMAIL)}'}

    def _user_headers(self):
        return {'Authorization': f'Bearer {self._login(USER_EMAIL)}'}

    def _insert_product(self, name='Coffee', price=100.0, stock=10, category_id=None):
        conn = get_db_connection()
        cursor = conn.execute(
            "INSERT INTO products (name, price, stock, category_id) VALUES (?, ?, ?, ?)",
            (name, price, stock, category_id),
        )
        conn.commit()
        conn.close()
        return cursor.lastrowid

    def _stock(self, product_id):
        conn = get_db_connection()
        stock = conn.execute("SELECT stock FROM products WHERE id = ?", (product_id,)).fetchone()['stock']
        conn.close()
        return stock

    def _query_one(self, sql, params=()):
        conn = get_db_connection()
        row = conn.execute(sql, params).fetchone()
        conn.close()
        return dict(row) if row else None

    def _place_order(self, headers, items, shipping_address='Bole, Addis Ababa'):
        response = self.client.post('/api/orders', headers=headers,
                                    json={'items': items, 'shipping_address': shipping_address})
        self.assertEqual(response.status_code, 201, response.data)
        return self._json(response)['order']
