import os
import unittest
import json
from unittest.mock import patch

from base_test_case import ApiTestCase, ADMIN_EMAIL, USER_EMAIL, PASSWORD
from app import app as flask_app
from database import get_db_connection
from auth import PASSWORD_RULE, FORGOT_PASSWORD_MESSAGE


REGISTRATION = {
    'first_name': 'Abebe',
    'last_name': 'Kebede',
    'email': 'abebe@example.com',
    'phone': '0912345678',
    'address': 'Piassa, Addis Ababa',
    'password': 'Secret12!',
    'confirm_password': 'Secret12!',
    'terms_accepted': True,
}


class AuthTestCase(ApiTestCase):

    # --- Registration & Login Tests ---
    def test_001_register(self):
        response = self.client.post('/api/auth/register', json=REGISTRATION)
        self.assertEqual(response.status_code, 201)
        data = json.loads(response.data.decode())
        self.assertIn('access_token', data)
        self.assertEqual(data['user']['name'], 'Abebe Kebede')
        self.assertEqual(data['user']['role'], 'customer')
        self.assertNotIn('password_hash', data['user'])

    def test_002_register_email_exists(self):
        self.client.post('/api/auth/register', json=REGISTRATION)
        response = self.client.post('/api/auth/register', json=dict(REGISTRATION, email='ABEBE@example.com'))
        self.assertEqual(response.status_code, 409)
        data = json.loads(response.data.decode())
        self.assertEqual(data['error'], 'User already exists with this email')

    def test_003_register_weak_password(self):
        response = self.client.post('/api/auth/register',
                                    json=dict(REGISTRATION, password='password', confirm_password='password'))
        self.assertEqual(response.status_code, 400)
        data = json.loads(response.data.decode())
        self.assertEqual(data['error'], PASSWORD_RULE)

    def test_004_register_password_mismatch(self):
        response = self.client.post('/api/auth/register', json=dict(REGISTRATION, confirm_password='Secret12?'))
        self.assertEqual(response.status_code, 400)
        data = json.loads(response.data.decode())
        self.assertEqual(data['error'], 'Passwords do not match')

    def test_005_register_requires_terms_and_fields(self):
        response = self.client.post('/api/auth/register', json=dict(REGISTRATION, terms_accepted=False))
        self.assertEqual(response.status_code, 400)
        response = self.client.post('/api/auth/register', json=dict(REGISTRATION, phone=''))
        self.assertEqual(response.status_code, 400)
        data = json.loads(response.data.decode())
        self.assertEqual(data['error'], 'All fields are required')
        response = self.client.post('/api/auth/register', json=dict(REGISTRATION, email='not-an-email'))
        self.assertEqual(response.status_code, 400)

    def test_006_admin_login(self):
        response = self.client.post('/api/auth/login', json={'email': ADMIN_EMAIL, 'password': PASSWORD})
        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data.decode())
        self.assertIn('access_token', data)
        self.assertEqual(data['user']['role'], 'admin')

    def test_007_login_invalid_credentials(self):
        response = self.client.post('/api/auth/login', json={'email': USER_EMAIL, 'password': 'Wrongpass1!'})
        self.assertEqual(response.status_code, 401)
        data = json.loads(response.data.decode())
        self.assertEqual(data['error'], 'Invalid email or password')

        response = self.client.post('/api/auth/login', json={'email': USER_EMAIL})
        self.assertEqual(response.status_code, 400)

    def test_008_login_is_logged(self):
        self._login(USER_EMAIL)
        row = self._query_one("SELECT * FROM user_activity_logs WHERE user_id = ? AND action = 'login'", (self.user_id,))
        self.assertIsNotNone(row)

    # --- Profile Tests ---
    def test_009_get_profile(self):
        response = self.client.get('/api/auth/profile', headers=self._user_headers())
        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data.decode())
        self.assertEqual(data['email'], USER_EMAIL)
        self.assertNotIn('password_hash', data)
        self.assertNotIn('reset_code', data)

    def test_010_get_profile_without_token(self):
        response = self.client.get('/api/auth/profile')
        self.assertEqual(response.status_code, 401)
        data = json.loads(response.data.decode())
        self.assertEqual(data['error'], 'No token provided')

        response = self.client.get('/api/auth/profile', headers={'Authorization': 'Bearer not.a.token'})
        self.assertEqual(response.status_code, 401)

    def test_011_update_profile(self):
        response = self.client.put('/api/auth/profile', headers=self._user_headers(),
                                   json={'name': 'Renamed User', 'phone': '0922222222', 'role': 'admin'})
        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data.decode())
        self.assertEqual(data['user']['name'], 'Renamed User')
        self.assertEqual(data['user']['phone'], '0922222222')
        # role is not a profile field
        self.assertEqual(data['user']['role'], 'customer')

    def test_012_change_password(self):
        headers = self._user_headers()
        response = self.client.put('/api/auth/change-password', headers=headers,
                                   json={'current_password': 'Wrongpass1!', 'new_password': 'Newpass12!'})
        self.assertEqual(response.status_code, 401)

        response = self.client.put('/api/auth/change-password', headers=headers,
                                   json={'current_password': PASSWORD, 'new_password': 'Newpass12!'})
        self.assertEqual(response.status_code, 200)
        self._login(USER_EMAIL, 'Newpass12!')

    # --- Password Reset Tests ---
    def test_013_password_reset_flow(self):
        response = self.client.post('/api/auth/forgot-password', json={'email': USER_EMAIL})
        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data.decode())
        self.assertEqual(data['message'], FORGOT_PASSWORD_MESSAGE)

        code = self._query_one("SELECT reset_code FROM users WHERE id = ?", (self.user_id,))['reset_code']
        self.assertEqual(len(code), 4)

        response = self.client.post('/api/auth/verify-code', json={'email': USER_EMAIL, 'code': '0000' if code != '0000' else '1111'})
        self.assertEqual(response.status_code, 400)

        response = self.client.post('/api/auth/verify-code', json={'email': USER_EMAIL, 'code': code})
        self.assertEqual(response.status_code, 200)

        response = self.client.post('/api/auth/reset-password',
                                    json={'email': USER_EMAIL, 'code': code, 'new_password': 'Resetpass1!'})
        self.assertEqual(response.status_code, 200)
        self._login(USER_EMAIL, 'Resetpass1!')

        # The code is single use.
        response = self.client.post('/api/auth/reset-password',
                                    json={'email': USER_EMAIL, 'code': code, 'new_password': 'Another12!'})
        self.assertEqual(response.status_code, 400)

    def test_014_forgot_password_unknown_email(self):
        response = self.client.post('/api/auth/forgot-password', json={'email': 'nobody@example.com'})
        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data.decode())
        self.assertEqual(data['message'], FORGOT_PASSWORD_MESSAGE)

    def test_015_expired_reset_code(self):
        conn = get_db_connection()
        conn.execute("UPDATE users SET reset_code = '1234', reset_code_expires = '2000-01-01 00:00:00' WHERE id = ?",
                     (self.user_id,))
        conn.commit()
        conn.close()
        response = self.client.post('/api/auth/verify-code', json={'email': USER_EMAIL, 'code': '1234'})
        self.assertEqual(response.status_code, 400)
        data = json.loads(response.data.decode())
        self.assertEqual(data['error'], 'Invalid or expired reset code')

    # --- Token Tests ---
    def test_016_token_for_deleted_user(self):
        headers = self._user_headers()
        conn = get_db_connection()
        conn.execute("DELETE FROM user_activity_logs WHERE user_id = ?", (self.user_id,))
        conn.execute("DELETE FROM users WHERE id = ?", (self.user_id,))
        conn.commit()
        conn.close()
        response = self.client.get('/api/auth/profile', headers=headers)
        self.assertEqual(response.status_code, 401)
        data = json.loads(response.data.decode())
        self.assertEqual(data['error'], 'User not found')

    def test_017_demoted_admin_loses_access(self):
        headers = self._admin_headers()
        conn = get_db_connection()
        conn.execute("UPDATE users SET role = 'customer' WHERE id = ?", (self.admin_id,))
        conn.commit()
        conn.close()
        response = self.client.get('/api/users', headers=headers)
        self.assertEqual(response.status_code, 403)

    def test_018_wrong_typed_fields_are_rejected(self):
        response = self.client.post('/api/auth/login', json={'email': 123, 'password': PASSWORD})
        self.assertEqual(response.status_code, 400)
        data = json.loads(response.data.decode())
        self.assertEqual(data['error'], 'Email and password are required')

        response = self.client.post('/api/auth/login', json=['not', 'an', 'object'])
        self.assertEqual(response.status_code, 400)

        response = self.client.post('/api/auth/register', json=dict(REGISTRATION, password=12345678, confirm_password=12345678))
        self.assertEqual(response.status_code, 400)
        data = json.loads(response.data.decode())
        self.assertEqual(data['error'], PASSWORD_RULE)

        response = self.client.put('/api/auth/profile', headers=self._user_headers(), json={'phone': ['0911', '2222']})
        self.assertEqual(response.status_code, 400)
        data = json.loads(response.data.decode())
        self.assertEqual(data['error'], 'phone must be a string')

        response = self.client.put('/api/auth/change-password', headers=self._user_headers(),
                                   json={'current_password': PASSWORD, 'new_password': {'value': 'Newpass1!'}})
        self.assertEqual(response.status_code, 400)

    # --- Google Sign-in Tests ---
    @patch('auth.id_token.verify_oauth2_token')
    def test_019_google_login_creates_customer(self, verify):
        verify.return_value = {'sub': 'google-123', 'email': 'Almaz@Example.com', 'email_verified': True, 'name': 'Almaz'}
        response = self.client.post('/api/auth/google', json={'token': 'google-id-token'})
        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data.decode())
        self.assertEqual(data['message'], 'Google login successful')
        self.assertEqual(data['user']['email'], 'almaz@example.com')
        self.assertEqual(data['user']['role'], 'customer')
        self.assertNotIn('google_id', data['user'])
        self.assertIn('access_token', data)
        self.assertEqual(verify.call_args[0][0], 'google-id-token')
        self.assertEqual(verify.call_args[0][2], 'test-client.apps.googleusercontent.com')

        user_row = self._query_one("SELECT * FROM users WHERE email = ?", ('almaz@example.com',))
        self.assertEqual(user_row['google_id'], 'google-123')
        self.assertEqual(user_row['name'], 'Almaz')

        response = self.client.get('/api/auth/profile', headers={'Authorization': f"Bearer {data['access_token']}"})
        self.assertEqual(response.status_code, 200)

    @patch('auth.id_token.verify_oauth2_token')
    def test_020_google_login_existing_user(self, verify):
        verify.return_value = {'sub': 'google-456', 'email': USER_EMAIL, 'email_verified': True}
        response = self.client.post('/api/auth/google', json={'token': 'google-id-token'})
        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data.decode())
        self.assertEqual(data['user']['id'], self.user_id)
        count = self._query_one("SELECT COUNT(*) AS n FROM users WHERE email = ?", (USER_EMAIL,))['n']
        self.assertEqual(count, 1)
        self.assertIsNotNone(self._query_one(
            "SELECT * FROM user_activity_logs WHERE user_id = ? AND action = 'google_login'", (self.user_id,)))
        # The password login keeps working.
        self._login(USER_EMAIL)

    @patch('auth.id_token.verify_oauth2_token')
    def test_021_google_login_rejections(self, verify):
        response = self.client.post('/api/auth/google', json={})
        self.assertEqual(response.status_code, 400)
        data = json.loads(response.data.decode())
        self.assertEqual(data['error'], 'Google token is required')

        verify.side_effect = ValueError('Token expired')
        response = self.client.post('/api/auth/google', json={'token': 'expired'})
        self.assertEqual(response.status_code, 401)
        data = json.loads(response.data.decode())
        self.assertEqual(data['error'], 'Invalid Google token')

        verify.side_effect = None
        verify.return_value = {'sub': 'google-789', 'email': 'new@example.com', 'email_verified': False}
        response = self.client.post('/api/auth/google', json={'token': 'unverified'})
        self.assertEqual(response.status_code, 400)
        self.assertIsNone(self._query_one("SELECT * FROM users WHERE email = 'new@example.com'"))

    @patch('auth.id_token.verify_oauth2_token')
    def test_022_google_login_not_configured(self, verify):
        with patch.dict(flask_app.config, {'GOOGLE_CLIENT_ID': None}):
            response = self.client.post('/api/auth/google', json={'token': 'google-id-token'})
        self.assertEqual(response.status_code, 503)
        verify.assert_not_called()


class UsersTestCase(ApiTestCase):

    def test_001_get_all_users_as_admin(self):
        response = self.client.get('/api/users', headers=self._admin_headers())
        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data.decode())
        self.assertIsInstance(data, list)
        emails = [user['email'] for user in data]
        self.assertIn(ADMIN_EMAIL, emails)
        self.assertIn(USER_EMAIL, emails)
        self.assertTrue(all('password_hash' not in user for user in data))

    def test_002_get_all_users_as_non_admin(self):
        response = self.client.get('/api/users', headers=self._user_headers())
        self.assertEqual(response.status_code, 403)
        data = json.loads(response.data.decode())
        self.assertEqual(data['error'], 'Administration rights required')

    def test_003_create_user_by_admin(self):
        new_user = {'name': 'Staff Member', 'email': 'staff@example.com', 'password': 'Staffpass1!', 'role': 'admin'}
        response = self.client.post('/api/users', json=new_user, headers=self._admin_headers())
        self.assertEqual(response.status_code, 201)
        data = json.loads(response.data.decode())
        self.assertEqual(data['email'], 'staff@example.com')
        self.assertEqual(data['role'], 'admin')

        user_row = self._query_one("SELECT * FROM users WHERE email = ?", ('staff@example.com',))
        self.assertIsNotNone(user_row)
        self.assertEqual(user_row['role'], 'admin')

    def test_004_create_user_by_admin_email_exists(self):
        response = self.client.post('/api/users', headers=self._admin_headers(),
                                    json={'name': 'Dup', 'email': USER_EMAIL, 'password': 'Duppass12!'})
        self.assertEqual(response.status_code, 409)
        data = json.loads(response.data.decode())
        self.assertEqual(data['error'], 'User already exists with this email')

    def test_005_create_user_invalid_role(self):
        response = self.client.post('/api/users', headers=self._admin_headers(),
                                    json={'name': 'X', 'email': 'x@example.com', 'password': 'Xpass123!', 'role': 'owner'})
        self.assertEqual(response.status_code, 400)

    def test_006_delete_user(self):
        headers = self._admin_headers()
        response = self.client.delete(f'/api/users/{self.user_id}', headers=headers)
        self.assertEqual(response.status_code, 200)
        self.assertIsNone(self._query_one("SELECT * FROM users WHERE id = ?", (self.user_id,)))

        response = self.client.delete(f'/api/users/{self.user_id}', headers=headers)
        self.assertEqual(response.status_code, 404)

    def test_007_delete_admin_user(self):
        response = self.client.delete(f'/api/users/{self.admin_id}', headers=self._admin_headers())
        self.assertEqual(response.status_code, 400)
        data = json.loads(response.data.decode())
        self.assertEqual(data['error'], 'Cannot delete admin user')

    def test_008_delete_user_with_orders(self):
        product_id = self._insert_product()
        self._place_order(self._user_headers(), [{'product_id': product_id, 'quantity': 1}])
        response = self.client.delete(f'/api/users/{self.user_id}', headers=self._admin_headers())
        self.assertEqual(response.status_code, 409)

    def test_009_update_user_role(self):
        headers = self._admin_headers()
        response = self.client.put(f'/api/users/{self.user_id}/role', headers=headers, json={'role': 'superuser'})
        self.assertEqual(response.status_code, 400)
        response = self.client.put('/api/users/9999/role', headers=headers, json={'role': 'admin'})
        self.assertEqual(response.status_code, 404)
        response = self.client.put(f'/api/users/{self.user_id}/role', headers=headers, json={'role': 'admin'})
        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data.decode())
        self.assertEqual(data['role'], 'admin')

    def test_010_user_order_history(self):
        product_id = self._insert_product(price=50.0, stock=10)
        user_headers = self._user_headers()
        delivered = self._place_order(user_headers, [{'product_id': product_id, 'quantity': 2}])
        self._place_order(user_headers, [{'product_id': product_id, 'quantity': 1}])
        admin_headers = self._admin_headers()
        self.client.put(f"/api/orders/{delivered['id']}/status", headers=admin_headers, json={'status': 'delivered'})

        response = self.client.get(f'/api/users/{self.user_id}/orders', headers=admin_headers)
        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data.decode())
        self.assertEqual(data['order_count'], 2)
        self.assertEqual(data['total_spent'], 100.0)
        self.assertEqual(data['user']['email'], USER_EMAIL)

    def test_011_create_user_wrong_typed_fields(self):
        headers = self._admin_headers()
        response = self.client.post('/api/users', headers=headers,
                                    json={'name': 'X', 'email': 'x@example.com', 'password': 12345678})
        self.assertEqual(response.status_code, 400)
        response = self.client.post('/api/users', headers=headers,
                                    json={'name': 'X', 'email': 'x@example.com', 'password': 'Xpass123!', 'phone': 911})
        self.assertEqual(response.status_code, 400)
        data = json.loads(response.data.decode())
        self.assertEqual(data['error'], 'phone must be a string')
        self.assertIsNone(self._query_one("SELECT * FROM users WHERE email = 'x@example.com'"))


class AppTestCase(ApiTestCase):

    def test_001_health(self):
        response = self.client.get('/health')
        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data.decode())
        self.assertEqual(data['status'], 'OK')
        self.assertIn('timestamp', data)
        self.assertIn('uptime', data)

    def test_002_unknown_route(self):
        response = self.client.get('/api/does-not-exist')
        self.assertEqual(response.status_code, 404)
        data = json.loads(response.data.decode())
        self.assertEqual(data['error'], 'Route not found')

    def test_003_default_settings_and_templates_seeded(self):
        self.assertIsNotNone(self._query_one("SELECT * FROM system_settings WHERE key = 'store_name'"))
        self.assertIsNotNone(self._query_one("SELECT * FROM email_templates WHERE name = 'password_reset'"))

    # --- CLI Tests ---
    def test_004_init_db_command(self):
        result = flask_app.test_cli_runner().invoke(args=['init-db'])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn('Database initialized successfully.', result.output)
        # Running it against an existing database keeps the data.
        self.assertIsNotNone(self._query_one("SELECT * FROM users WHERE email = ?", (USER_EMAIL,)))

    def test_005_create_admin_command(self):
        result = flask_app.test_cli_runner().invoke(
            args=['create-admin', 'New@Example.com', 'Newpass1!', '--name', 'New Admin'])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn('Admin created: New@Example.com', result.output)
        user_row = self._query_one("SELECT * FROM users WHERE email = ?", ('new@example.com',))
        self.assertEqual(user_row['role'], 'admin')
        self.assertEqual(user_row['name'], 'New Admin')
        self._login('new@example.com', 'Newpass1!')

    def test_006_create_admin_command_promotes_existing_user(self):
        result = flask_app.test_cli_runner().invoke(args=['create-admin', USER_EMAIL, 'ignored'])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn(f'Admin promoted: {USER_EMAIL}', result.output)
        user_row = self._query_one("SELECT * FROM users WHERE email = ?", (USER_EMAIL,))
        self.assertEqual(user_row['role'], 'admin')
        # The password is left alone.
        self._login(USER_EMAIL)

    # --- Upload Serving Tests ---
    def test_007_uploaded_file_is_served(self):
        with open(os.path.join(self.upload_dir, 'banner.png'), 'wb') as f:
            f.write(b'\x89PNG fake image')
        response = self.client.get('/uploads/banner.png')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, b'\x89PNG fake image')
        response.close()

        response = self.client.get('/uploads/missing.png')
        self.assertEqual(response.status_code, 404)


if __name__ == '__main__':
    unittest.main()
