# users.py
# Admin user management.

import sqlite3

from flask import Blueprint, jsonify

from auth import EMAIL_RE, admin_required, public_user
from database import get_db_connection, utcnow
from extensions import bcrypt
from helpers import json_body, optional_text, text_field

users_bp = Blueprint("users", __name__)

ROLES = ("customer", "admin")


@users_bp.route('', methods=['POST'])
@admin_required()
def create_user_by_admin():
    data = json_body()
    name = text_field(data, 'name')
    email = text_field(data, 'email').lower()
    password = data.get('password')
    role = data.get('role', 'customer')
    if not name or not email or not password or not isinstance(password, str):
        return jsonify({"error": "Name, email and password are required"}), 400
    if not EMAIL_RE.match(email):
        return jsonify({"error": "Please provide a valid email address"}), 400
    if role not in ROLES:
        return jsonify({"error": "Invalid role"}), 400
    try:
        phone = optional_text(data, 'phone')
        address = optional_text(data, 'address')
    except TypeError as e:
        return jsonify({"error": str(e)}), 400

    password_hash = bcrypt.generate_password_hash(password).decode('utf-8')
    conn = get_db_connection()
    try:
        cursor = conn.execute(
            "INSERT INTO users (name, email, password_hash, phone, address, role) VALUES (?, ?, ?, ?, ?, ?)",
            (name, email, password_hash, phone, address, role),
        )
    except sqlite3.IntegrityError:
        conn.close()
        return jsonify({"error": "User already exists with this email"}), 409
    conn.commit()
    user = conn.execute("SELECT * FROM users WHERE id = ?", (cursor.lastrowid,)).fetchone()
    conn.close()
    return jsonify(public_user(user)), 201


@users_bp.route('', methods=['GET'])
@admin_required()
def get_all_users():
    conn = get_db_connection()
    users_cursor = conn.execute('SELECT * FROM users ORDER BY created_at DESC, id DESC').fetchall()
    conn.close()
    return jsonify([public_user(row) for row in users_cursor]), 200


@users_bp.route('/<int:user_id>', methods=['DELETE'])
@admin_required()
def delete_user(user_id):
    conn = get_db_connection()
    user = conn.execute('SELECT * FROM users WHERE id = ?', (user_id,)).fetchone()
    if not user:
        conn.close()
        return jsonify({"error": "User not found"}), 404
    if user['role'] == 'admin':
        conn.close()
        return jsonify({"error": "Cannot delete admin user"}), 400
    if conn.execute('SELECT 1 FROM orders WHERE user_id = ? LIMIT 1', (user_id,)).fetchone():
        conn.close()
        return jsonify({"error": "Cannot delete user with existing orders"}), 409

    conn.execute('DELETE FROM users WHERE id = ?', (user_id,))
    conn.commit()
    conn.close()
    return jsonify({"message": "User deleted successfully"}), 200


@users_bp.route('/<int:user_id>/role', methods=['PUT'])
@admin_required()
def update_user_role(user_id):
    role = json_body().get('role')
    if role not in ROLES:
        return jsonify({"error": "Invalid role"}), 400

    conn = get_db_connection()
    cursor = conn.execute('UPDATE users SET role = ?, updated_at = ? WHERE id = ?', (role, utcnow(), user_id))
    if cursor.rowcount == 0:
        conn.close()
        return jsonify({"error": "User not found"}), 404
    conn.commit()
    user = conn.execute('SELECT * FROM users WHERE id = ?', (user_id,)).fetchone()
    conn.close()
    return jsonify(public_user(user)), 200


@users_bp.route('/<int:user_id>/orders', methods=['GET'])
@admin_required()
def get_user_order_history(user_id):
    conn = get_db_connection()
    user = conn.execute('SELECT * FROM users WHERE id = ?', (user_id,)).fetchone()
    if not user:
        conn.close()
        return jsonify({"error": "User not found"}), 404
    orders = [dict(row) for row in conn.execute(
        'SELECT * FROM orders WHERE user_id = ? ORDER BY created_at DESC, id DESC', (user_id,)
    ).fetchall()]
    conn.close()

    total_spent = sum(order['total_amount'] for order in orders if order['status'] == 'delivered')
    return jsonify({
        "user": public_user(user),
        "orders": orders,
        "total_spent": round(total_spent, 2),
        "order_count": len(orders),
    }), 200
