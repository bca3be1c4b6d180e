# auth.py
# Registration, login (password and Google), profile and password-reset endpoints,
# plus the JWT helpers shared by the other blueprints.

import datetime
import logging
import re
import secrets
import sqlite3
from functools import wraps

from flask import Blueprint, current_app, jsonify, request
from flask_jwt_extended import (
    create_access_token,
    current_user,
    jwt_required,
    verify_jwt_in_request,
)
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from database import get_db_connection, utcnow
from extensions import bcrypt, jwt
from helpers import json_body, text_field
from mailer import send_template_email

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$")
PASSWORD_RULE = ("Password must be at least 8 characters long and include uppercase, "
                 "lowercase, number, and special character")
FORGOT_PASSWORD_MESSAGE = "If the email is registered, a 4-digit reset code has been sent"
PRIVATE_USER_FIELDS = ("password_hash", "reset_code", "reset_code_expires", "google_id")


# --- JWT callbacks ---
@jwt.user_lookup_loader
def load_user(_jwt_header, jwt_data):
    """Loads the token's user so role changes and deletions take effect immediately."""
    conn = get_db_connection()
    row = conn.execute("SELECT * FROM users WHERE id = ?", (jwt_data["sub"],)).fetchone()
    conn.close()
    return dict(row) if row else None


@jwt.user_lookup_error_loader
def user_not_found(_jwt_header, _jwt_data):
    return jsonify({"error": "User not found"}), 401


@jwt.unauthorized_loader
def missing_token(reason):
    return jsonify({"error": "No token provided", "details": reason}), 401


@jwt.invalid_token_loader
def invalid_token(reason):
    return jsonify({"error": "Invalid token", "details": reason}), 401


@jwt.expired_token_loader
def expired_token(_jwt_header, _jwt_data):
    return jsonify({"error": "Token has expired"}), 401


# --- Helpers ---
def admin_required():
    """Custom decorator to protect routes that require admin privileges."""
    def wrapper(fn):
        @wraps(fn)
        def decorator(*args, **kwargs):
            verify_jwt_in_request()
            if current_user["role"] == "admin":
                return fn(*args, **kwargs)
            else:
                return jsonify({"error": "Administration rights required"}), 403
        return decorator
    return wrapper


def is_admin():
    return current_user["role"] == "admin"


def public_user(row):
    user = dict(row)
    for field in PRIVATE_USER_FIELDS:
        user.pop(field, None)
    return user


def issue_token(user):
    return create_access_token(identity=str(user["id"]), additional_claims={"role": user["role"]})


def log_activity(conn, user_id, action, details=None):
    """Records a user action; the caller commits."""
    conn.execute(
        "INSERT INTO user_activity_logs (user_id, action, details, ip_address, user_agent) VALUES (?, ?, ?, ?, ?)",
        (user_id, action, details, request.remote_addr, request.headers.get("User-Agent")),
    )


def _is_password(value):
    return isinstance(value, str) and bool(value)


def _valid_reset_code(user, code):
    if not user or not user["reset_code"] or user["reset_code"] != str(code):
        return False
    expires = datetime.datetime.strptime(user["reset_code_expires"], "%Y-%m-%d %H:%M:%S")
    return expires >= datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


# --- Auth Endpoints ---
@auth_bp.route('/register', methods=['POST'])
def register():
    data = json_body()
    name = text_field(data, 'name') or f"{text_field(data, 'first_name')} {text_field(data, 'last_name')}".strip()
    email = text_field(data, 'email').lower()
    phone = text_field(data, 'phone')
    address = text_field(data, 'address')
    password = data.get('password')
    confirm_password = data.get('confirm_password')

    if not all([name, email, phone, address, password, confirm_password]):
        return jsonify({"error": "All fields are required"}), 400
    if not EMAIL_RE.match(email):
        return jsonify({"error": "Please provide a valid email address"}), 400
    if not data.get('terms_accepted'):
        return jsonify({"error": "You must accept the Terms of Service and Privacy Policy"}), 400
    if not _is_password(password) or not PASSWORD_RE.match(password):
        return jsonify({"error": PASSWORD_RULE}), 400
    if password != confirm_password:
        return jsonify({"error": "Passwords do not match"}), 400

    password_hash = bcrypt.generate_password_hash(password).decode('utf-8')
    conn = get_db_connection()
    try:
        cursor = conn.execute(
            "INSERT INTO users (name, email, password_hash, phone, address, role) VALUES (?, ?, ?, ?, ?, 'customer')",
            (name, email, password_hash, phone, address),
        )
    except sqlite3.IntegrityError:
        conn.close()
        return jsonify({"error": "User already exists with this email"}), 409
    user = conn.execute("SELECT * FROM users WHERE id = ?", (cursor.lastrowid,)).fetchone()
    log_activity(conn, user["id"], "register")
    conn.commit()
    conn.close()

    logger.info("Registered user %s", user["id"])
    return jsonify({
        "message": "User registered successfully",
        "user": public_user(user),
        "access_token": issue_token(user),
    }), 201


@auth_bp.route('/login', methods=['POST'])
def login_user():
    data = json_body()
    email = text_field(data, 'email').lower()
    password = data.get('password')
    if not email or not _is_password(password):
        return jsonify({"error": "Email and password are required"}), 400

    conn = get_db_connection()
    user_row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
    if user_row and bcrypt.check_password_hash(user_row['password_hash'], password):
        log_activity(conn, user_row['id'], "login")
        conn.commit()
        conn.close()
        return jsonify({
            "message": "Login successful",
            "user": public_user(user_row),
            "access_token": issue_token(user_row),
        }), 200
    conn.close()
    return jsonify({"error": "Invalid email or password"}), 401


@auth_bp.route('/google', methods=['POST'])
def google_login():
    """Signs in with a Google ID token, creating a customer account on first use."""
    token = text_field(json_body(), 'token')
    if not token:
        return jsonify({"error": "Google token is required"}), 400
    client_id = current_app.config.get("GOOGLE_CLIENT_ID")
    if not client_id:
        return jsonify({"error": "Google sign-in is not configured"}), 503

    try:
        claims = id_token.verify_oauth2_token(token, google_requests.Request(), client_id)
    except ValueError as e:
        logger.warning("Rejected Google token: %s", e)
        return jsonify({"error": "Invalid Google token"}), 401

    email = (claims.get('email') or '').strip().lower()
    if not email or not claims.get('email_verified'):
        return jsonify({"error": "Invalid Google token"}), 400

    conn = get_db_connection()
    user = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
    if user is None:
        # Google accounts get a random password; they can set one through the reset flow.
        password_hash = bcrypt.generate_password_hash(secrets.token_urlsafe(32)).decode('utf-8')
        cursor = conn.execute(
            "INSERT INTO users (name, email, password_hash, role, google_id) VALUES (?, ?, ?, 'customer', ?)",
            (claims.get('name') or email.split('@')[0], email, password_hash, claims.get('sub')),
        )
        user = conn.execute("SELECT * FROM users WHERE id = ?", (cursor.lastrowid,)).fetchone()
        logger.info("Registered user %s through Google", user["id"])
    elif not user["google_id"]:
        conn.execute(
            "UPDATE users SET google_id = ?, updated_at = ? WHERE id = ?",
            (claims.get('sub'), utcnow(), user["id"]),
        )
    log_activity(conn, user["id"], "google_login")
    conn.commit()
    conn.close()

    return jsonify({
        "message": "Google login successful",
        "user": public_user(user),
        "access_token": issue_token(user),
    }), 200


@auth_bp.route('/profile', methods=['GET'])
@jwt_required()
def get_profile():
    return jsonify(public_user(current_user)), 200


@auth_bp.route('/profile', methods=['PUT'])
@jwt_required()
def update_profile():
    data = json_body()
    updates = {key: data[key] for key in ('name', 'phone', 'address') if key in data}
    for key, value in updates.items():
        if value is not None and not isinstance(value, str):
            return jsonify({"error": f"{key} must be a string"}), 400
    if 'name' in updates and not (updates['name'] or '').strip():
        return jsonify({"error": "Name cannot be empty"}), 400
    if not updates:
        return jsonify({"error": "No update data provided."}), 400

    set_clause = ", ".join(f"{key} = ?" for key in updates)
    conn = get_db_connection()
    conn.execute(
        f"UPDATE users SET {set_clause}, updated_at = ? WHERE id = ?",
        (*updates.values(), utcnow(), current_user["id"]),
    )
    log_activity(conn, current_user["id"], "update_profile")
    conn.commit()
    user = conn.execute("SELECT * FROM users WHERE id = ?", (current_user["id"],)).fetchone()
    conn.close()
    return jsonify({"message": "Profile updated successfully", "user": public_user(user)}), 200


@auth_bp.route('/change-password', methods=['PUT'])
@jwt_required()
def change_password():
    data = json_body()
    current_password = data.get('current_password')
    new_password = data.get('new_password')
    if not _is_password(current_password) or not _is_password(new_password):
        return jsonify({"error": "Current and new passwords are required"}), 400
    if not bcrypt.check_password_hash(current_user['password_hash'], current_password):
        return jsonify({"error": "Invalid current password"}), 401
    if not PASSWORD_RE.match(new_password):
        return jsonify({"error": PASSWORD_RULE}), 400

    conn = get_db_connection()
    conn.execute(
        "UPDATE users SET password_hash = ?, updated_at = ? WHERE id = ?",
        (bcrypt.generate_password_hash(new_password).decode('utf-8'), utcnow(), current_user["id"]),
    )
    log_activity(conn, current_user["id"], "change_password")
    conn.commit()
    conn.close()
    return jsonify({"message": "Password changed successfully"}), 200


@auth_bp.route('/forgot-password', methods=['POST'])
def forgot_password():
    email = text_field(json_body(), 'email').lower()
    if not email:
        return jsonify({"error": "Email is required"}), 400
    if not EMAIL_RE.match(email):
        return jsonify({"error": "Please provide a valid email address"}), 400

    conn = get_db_connection()
    user = conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone()
    if not user:
        conn.close()
        # Same answer whether or not the address is registered.
        return jsonify({"message": FORGOT_PASSWORD_MESSAGE}), 200

    ttl = current_app.config.get("RESET_CODE_TTL_MINUTES", 10)
    code = str(secrets.randbelow(9000) + 1000)
    expires = (datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(minutes=ttl)).strftime("%Y-%m-%d %H:%M:%S")
    conn.execute(
        "UPDATE users SET reset_code = ?, reset_code_expires = ?, updated_at = ? WHERE id = ?",
        (code, expires, utcnow(), user["id"]),
    )
    log_activity(conn, user["id"], "forgot_password")
    conn.commit()
    conn.close()

    send_template_email(
        email,
        "password_reset",
        {"code": code, "minutes": ttl},
        "Password Reset Code",
        "<p>Your 4-digit reset code is: <strong>{{code}}</strong>. It expires in {{minutes}} minutes.</p>",
    )
    return jsonify({"message": FORGOT_PASSWORD_MESSAGE}), 200


@auth_bp.route('/verify-code', methods=['POST'])
def verify_reset_code():
    data = json_body()
    email = text_field(data, 'email').lower()
    code = data.get('code')
    if not email or not code:
        return jsonify({"error": "Email and code are required"}), 400

    conn = get_db_connection()
    user = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
    conn.close()
    if not _valid_reset_code(user, code):
        return jsonify({"error": "Invalid or expired reset code"}), 400
    return jsonify({"message": "Code verified successfully", "success": True}), 200


@auth_bp.route('/reset-password', methods=['POST'])
def reset_password():
    data = json_body()
    email = text_field(data, 'email').lower()
    code = data.get('code')
    new_password = data.get('new_password')
    if not email or not code or not _is_password(new_password):
        return jsonify({"error": "Email, code and new password are required"}), 400

    conn = get_db_connection()
    user = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
    if not _valid_reset_code(user, code):
        conn.close()
        return jsonify({"error": "Invalid or expired reset session"}), 400
    if not PASSWORD_RE.match(new_password):
        conn.close()
        return jsonify({"error": PASSWORD_RULE}), 400

    conn.execute(
        "UPDATE users SET password_hash = ?, reset_code = NULL, reset_code_expires = NULL, updated_at = ? WHERE id = ?",
        (bcrypt.generate_password_hash(new_password).decode('utf-8'), utcnow(), user["id"]),
    )
    log_activity(conn, user["id"], "reset_password")
    conn.commit()
    conn.close()
    return jsonify({"message": "Password reset successfully"}), 200
