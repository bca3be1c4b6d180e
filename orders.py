# orders.py
# Order placement for customers and order management for admins.

import logging
import sqlite3

from flask import Blueprint, jsonify, request
from flask_jwt_extended import current_user, jwt_required

from auth import admin_required, is_admin, log_activity
from database import get_db_connection, utcnow
from helpers import json_body, optional_text, text_field

logger = logging.getLogger(__name__)

orders_bp = Blueprint("orders", __name__)

ORDER_STATUSES = ("pending", "confirmed", "shipped", "delivered", "cancelled")
PAYMENT_STATUSES = ("pending", "paid", "failed")


class OrderError(Exception):
    def __init__(self, message, status_code=400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _is_positive_int(value):
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def order_items(conn, order_id):
    rows = conn.execute('''
        SELECT oi.id, oi.product_id, oi.quantity, oi.price, p.name as product_name, p.image_url
        FROM order_items oi
        JOIN products p ON oi.product_id = p.id
        WHERE oi.order_id = ?
        ORDER BY oi.id
    ''', (order_id,)).fetchall()
    return [dict(row) for row in rows]


def order_payments(conn, order_id):
    rows = conn.execute('''
        SELECT id, amount, payment_method, transaction_id, status, created_at, updated_at
        FROM payments WHERE order_id = ? ORDER BY id DESC
    ''', (order_id,)).fetchall()
    return [dict(row) for row in rows]


def serialize_order(conn, order, with_payments=False):
    data = dict(order)
    data['items'] = order_items(conn, order['id'])
    if with_payments:
        data['payments'] = order_payments(conn, order['id'])
    return data


def place_order(conn, user, items, shipping_address, customer_name=None, customer_email=None):
    """Validates the cart, then writes the order, its items and the stock decrements in one transaction.

    Returns the new order id. Raises OrderError when the request cannot be honoured.
    """
    quantities = {}
    for index, item in enumerate(items):
        if not isinstance(item, dict) or not _is_positive_int(item.get('product_id')):
            raise OrderError(f"Invalid product_id at index {index}: {item.get('product_id') if isinstance(item, dict) else item}")
        if not _is_positive_int(item.get('quantity')):
            raise OrderError(f"Invalid quantity at index {index}: {item.get('quantity')}")
        quantities[item['product_id']] = quantities.get(item['product_id'], 0) + item['quantity']

    products = {}
    for product_id, quantity in quantities.items():
        product = conn.execute('SELECT id, name, price, stock FROM products WHERE id = ?', (product_id,)).fetchone()
        if not product:
            raise OrderError(f"Product {product_id} not found")
        if product['stock'] < quantity:
            raise OrderError(f"Insufficient stock for {product['name']}")
        products[product_id] = product

    total_amount = round(sum(products[pid]['price'] * qty for pid, qty in quantities.items()), 2)

    try:
        cursor = conn.execute(
            '''INSERT INTO orders (user_id, total_amount, status, payment_status, shipping_address, customer_name, customer_email)
               VALUES (?, ?, 'pending', 'pending', ?, ?, ?)''',
            (user['id'], total_amount, shipping_address, customer_name or user['name'], customer_email or user['email']),
        )
        order_id = cursor.lastrowid
        for product_id, quantity in quantities.items():
            product = products[product_id]
            conn.execute(
                'INSERT INTO order_items (order_id, product_id, quantity, price) VALUES (?, ?, ?, ?)',
                (order_id, product_id, quantity, product['price']),
            )
            # Guarded decrement: a concurrent checkout may have taken the stock since the check above.
            updated = conn.execute(
                'UPDATE products SET stock = stock - ?, updated_at = ? WHERE id = ? AND stock >= ?',
                (quantity, utcnow(), product_id, quantity),
            )
            if updated.rowcount == 0:
                raise OrderError(f"Insufficient stock for {product['name']}", 409)
        log_activity(conn, user['id'], "create_order", f"order {order_id}")
        conn.commit()
    except Exception:
        conn.rollback()
        raise

    logger.info("Order %s created for user %s, total %.2f", order_id, user['id'], total_amount)
    return order_id


def set_order_status(conn, order, status):
    """Moves an order to `status`; cancelling returns its items to stock. The caller commits."""
    if order['status'] == status:
        return False
    if order['status'] == 'cancelled':
        raise OrderError("Cancelled orders cannot be reopened")
    if status == 'cancelled':
        for item in conn.execute('SELECT product_id, quantity FROM order_items WHERE order_id = ?', (order['id'],)).fetchall():
            conn.execute(
                'UPDATE products SET stock = stock + ?, updated_at = ? WHERE id = ?',
                (item['quantity'], utcnow(), item['product_id']),
            )
    conn.execute('UPDATE orders SET status = ?, updated_at = ? WHERE id = ?', (status, utcnow(), order['id']))
    logger.info("Order %s status %s -> %s", order['id'], order['status'], status)
    return True


# --- Order Endpoints ---
@orders_bp.route('', methods=['POST'])
@jwt_required()
def create_order():
    data = json_body()
    items = data.get('items')
    shipping_address = text_field(data, 'shipping_address')

    missing = [field for field, value in (('items', items), ('shipping_address', shipping_address)) if not value]
    if missing:
        return jsonify({"error": f"Missing required fields: {', '.join(missing)}"}), 400
    if not isinstance(items, list):
        return jsonify({"error": "Items array is required and must not be empty"}), 400
    try:
        customer_name = optional_text(data, 'customer_name')
        customer_email = optional_text(data, 'customer_email')
    except TypeError as e:
        return jsonify({"error": str(e)}), 400

    conn = get_db_connection()
    try:
        order_id = place_order(
            conn, current_user, items, shipping_address,
            customer_name=customer_name, customer_email=customer_email,
        )
    except OrderError as e:
        conn.close()
        return jsonify({"error": e.message}), e.status_code
    except sqlite3.OperationalError as e:
        # Typically "database is locked" while another checkout holds the write lock.
        conn.close()
        logger.warning("Order for user %s not placed: %s", current_user['id'], e)
        return jsonify({"error": "The shop is busy, please retry your order"}), 503
    order = conn.execute('SELECT * FROM orders WHERE id = ?', (order_id,)).fetchone()
    result = serialize_order(conn, order)
    conn.close()
    return jsonify({"message": "Order created successfully", "order": result}), 201


@orders_bp.route('/my-orders', methods=['GET'])
@jwt_required()
def get_my_orders():
    conn = get_db_connection()
    rows = conn.execute(
        'SELECT * FROM orders WHERE user_id = ? ORDER BY created_at DESC, id DESC', (current_user['id'],)
    ).fetchall()
    orders = [serialize_order(conn, row) for row in rows]
    conn.close()
    return jsonify(orders), 200


@orders_bp.route('', methods=['GET'])
@admin_required()
def get_all_orders():
    clauses, params = [], []
    for field in ('status', 'payment_status'):
        if request.args.get(field):
            clauses.append(f'o.{field} = ?')
            params.append(request.args[field])
    query = '''
        SELECT o.*, u.name as user_name, u.email as user_email
        FROM orders o
        JOIN users u ON o.user_id = u.id
    '''
    if clauses:
        query += ' WHERE ' + ' AND '.join(clauses)
    query += ' ORDER BY o.created_at DESC, o.id DESC'

    conn = get_db_connection()
    orders_cursor = conn.execute(query, params).fetchall()
    conn.close()
    return jsonify([dict(row) for row in orders_cursor]), 200


@orders_bp.route('/<int:order_id>', methods=['GET'])
@jwt_required()
def get_order_details(order_id):
    conn = get_db_connection()
    order = conn.execute('SELECT * FROM orders WHERE id = ?', (order_id,)).fetchone()
    if not order or (order['user_id'] != current_user['id'] and not is_admin()):
        conn.close()
        return jsonify({"error": "Order not found"}), 404
    order_details = serialize_order(conn, order, with_payments=True)
    conn.close()
    return jsonify(order_details), 200


@orders_bp.route('/<int:order_id>/status', methods=['PUT'])
@admin_required()
def update_order_status(order_id):
    data = json_body()
    if 'status' not in data:
        return jsonify({"error": "Status is required"}), 400
    new_status = data['status']
    if new_status not in ORDER_STATUSES:
        return jsonify({"error": "Invalid status"}), 400

    conn = get_db_connection()
    order = conn.execute('SELECT * FROM orders WHERE id = ?', (order_id,)).fetchone()
    if not order:
        conn.close()
        return jsonify({"error": "Order not found"}), 404
    try:
        set_order_status(conn, order, new_status)
    except OrderError as e:
        conn.rollback()
        conn.close()
        return jsonify({"error": e.message}), e.status_code
    conn.commit()
    conn.close()
    return jsonify({"message": f"Order {order_id} status updated to {new_status}"}), 200


@orders_bp.route('/bulk-status', methods=['PUT'])
@admin_required()
def bulk_update_order_status():
    data = json_body()
    order_ids = data.get('order_ids')
    status = data.get('status')
    if not isinstance(order_ids, list) or not order_ids:
        return jsonify({"error": "Order IDs array is required"}), 400
    if status not in ORDER_STATUSES:
        return jsonify({"error": "Invalid status"}), 400

    affected_rows = 0
    skipped = []
    conn = get_db_connection()
    for order_id in order_ids:
        if not _is_positive_int(order_id):
            skipped.append(order_id)
            continue
        order = conn.execute('SELECT * FROM orders WHERE id = ?', (order_id,)).fetchone()
        if not order:
            skipped.append(order_id)
            continue
        try:
            if set_order_status(conn, order, status):
                affected_rows += 1
        except OrderError:
            skipped.append(order_id)
    conn.commit()
    conn.close()
    return jsonify({
        "message": f"{affected_rows} orders updated successfully",
        "affected_rows": affected_rows,
        "skipped": skipped,
    }), 200
