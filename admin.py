# admin.py
# Admin dashboard: statistics, analytics, inventory, payments and system settings.

import csv
import datetime
import io
import json
import logging
import math

from flask import Blueprint, Response, current_app, jsonify, request
from flask_jwt_extended import current_user

from auth import admin_required, log_activity
from chapa import ChapaError
from database import get_db_connection, row_to_dict, utcnow
from helpers import json_body, optional_text, text_field
from catalog import (
    create_category,
    create_product,
    delete_category,
    delete_product,
    get_all_categories,
    get_all_products,
    get_product,
    update_category,
    update_product,
)
from orders import PAYMENT_STATUSES, bulk_update_order_status, get_all_orders
from payments import find_payment, get_chapa_client
from users import delete_user, get_all_users

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__)

PERIOD_FORMATS = {
    "daily": "%Y-%m-%d",
    "weekly": "%Y-%W",
    "monthly": "%Y-%m",
}

EXPORT_COLUMNS = (
    "id", "created_at", "status", "payment_status", "total_amount",
    "customer_name", "customer_email", "user_name", "user_email", "shipping_address", "payment_tx_ref",
)


class QueryError(ValueError):
    pass


def _period_format(default="monthly"):
    period = request.args.get('period', default)
    if period not in PERIOD_FORMATS:
        raise QueryError("Invalid period, expected daily, weekly or monthly")
    return PERIOD_FORMATS[period]


def _date_range(column):
    """SQL conditions and params for the optional start_date/end_date query arguments."""
    clauses, params = [], []
    for arg, operator in (('start_date', '>='), ('end_date', '<=')):
        value = request.args.get(arg)
        if not value:
            continue
        try:
            datetime.datetime.strptime(value, "%Y-%m-%d")
        except ValueError:
            raise QueryError(f"Invalid {arg}, expected YYYY-MM-DD")
        clauses.append(f"date({column}) {operator} ?")
        params.append(value)
    return clauses, params


def _low_stock_threshold(conn):
    row = conn.execute("SELECT value FROM system_settings WHERE key = 'low_stock_threshold'").fetchone()
    try:
        return int(row['value']) if row else current_app.config.get("LOW_STOCK_THRESHOLD", 3)
    except ValueError:
        return current_app.config.get("LOW_STOCK_THRESHOLD", 3)


@admin_bp.errorhandler(QueryError)
def handle_query_error(e):
    return jsonify({"error": str(e)}), 400


# --- Dashboard & Analytics ---
@admin_bp.route('/dashboard-stats', methods=['GET'])
@admin_required()
def get_dashboard_stats():
    conn = get_db_connection()
    stats = {
        "total_users": conn.execute('SELECT COUNT(*) FROM users').fetchone()[0],
        "total_orders": conn.execute('SELECT COUNT(*) FROM orders').fetchone()[0],
        "total_products": conn.execute('SELECT COUNT(*) FROM products').fetchone()[0],
        "total_revenue": round(conn.execute(
            "SELECT COALESCE(SUM(total_amount), 0) FROM orders WHERE payment_status = 'paid'"
        ).fetchone()[0], 2),
        "pending_orders": conn.execute("SELECT COUNT(*) FROM orders WHERE status = 'pending'").fetchone()[0],
        "low_stock_products": conn.execute(
            'SELECT COUNT(*) FROM products WHERE stock <= ?', (_low_stock_threshold(conn),)
        ).fetchone()[0],
    }
    conn.close()
    return jsonify(stats), 200


@admin_bp.route('/analytics/revenue', methods=['GET'])
@admin_required()
def get_revenue_analytics():
    fmt = _period_format()
    clauses, params = _date_range('created_at')
    clauses.insert(0, "status = 'delivered'")
    conn = get_db_connection()
    rows = conn.execute(f'''
        SELECT strftime('{fmt}', created_at) as period,
               ROUND(SUM(total_amount), 2) as revenue,
               COUNT(id) as orders
        FROM orders
        WHERE {' AND '.join(clauses)}
        GROUP BY period
        ORDER BY period ASC
    ''', params).fetchall()
    conn.close()
    return jsonify({"revenue_data": [dict(row) for row in rows]}), 200


@admin_bp.route('/analytics/top-products', methods=['GET'])
@admin_required()
def get_top_selling_products():
    limit = request.args.get('limit', 10, type=int)
    if not limit or limit < 1:
        raise QueryError("Invalid limit")
    clauses, params = _date_range('o.created_at')
    clauses[:0] = ["o.payment_status = 'paid'", "o.status != 'cancelled'"]
    conn = get_db_connection()
    rows = conn.execute(f'''
        SELECT p.id, p.name, p.price, p.image_url, p.stock,
               SUM(oi.quantity) as sales_count,
               ROUND(SUM(oi.quantity * oi.price), 2) as total_revenue
        FROM products p
        JOIN order_items oi ON p.id = oi.product_id
        JOIN orders o ON oi.order_id = o.id
        WHERE {' AND '.join(clauses)}
        GROUP BY p.id
        ORDER BY sales_count DESC, p.name ASC
        LIMIT ?
    ''', (*params, limit)).fetchall()
    conn.close()
    return jsonify({"top_products": [dict(row) for row in rows]}), 200


@admin_bp.route('/analytics/customers', methods=['GET'])
@admin_required()
def get_customer_analytics():
    fmt = _period_format()
    since = (datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(days=30)).strftime("%Y-%m-%d %H:%M:%S")
    conn = get_db_connection()
    new_customers = conn.execute(f'''
        SELECT strftime('{fmt}', created_at) as period, COUNT(id) as new_customers
        FROM users
        WHERE role = 'customer'
        GROUP BY period
        ORDER BY period ASC
    ''').fetchall()
    total_customers = conn.execute("SELECT COUNT(*) FROM users WHERE role = 'customer'").fetchone()[0]
    active_customers = conn.execute('''
        SELECT COUNT(DISTINCT o.user_id)
        FROM orders o
        JOIN users u ON o.user_id = u.id
        WHERE u.role = 'customer' AND o.created_at >= ?
    ''', (since,)).fetchone()[0]
    conn.close()
    return jsonify({
        "new_customers": [dict(row) for row in new_customers],
        "total_customers": total_customers,
        "active_customers": active_customers,
    }), 200


@admin_bp.route('/analytics/order-status', methods=['GET'])
@admin_required()
def get_order_status_distribution():
    conn = get_db_connection()
    rows = conn.execute(
        'SELECT status, COUNT(id) as count FROM orders GROUP BY status ORDER BY status'
    ).fetchall()
    conn.close()
    return jsonify({"order_status_data": [dict(row) for row in rows]}), 200


# --- Inventory ---
@admin_bp.route('/products/low-stock', methods=['GET'])
@admin_required()
def get_low_stock_products():
    conn = get_db_connection()
    threshold = request.args.get('threshold', type=int)
    if threshold is None:
        threshold = _low_stock_threshold(conn)
    rows = conn.execute(
        'SELECT * FROM products WHERE stock <= ? ORDER BY stock ASC, name ASC', (threshold,)
    ).fetchall()
    conn.close()
    return jsonify({"low_stock_products": [dict(row) for row in rows], "threshold": threshold}), 200


@admin_bp.route('/products/<int:product_id>/stock', methods=['PATCH'])
@admin_required()
def update_product_stock(product_id):
    stock = json_body().get('stock')
    if not isinstance(stock, int) or isinstance(stock, bool) or stock < 0:
        return jsonify({"error": "Invalid stock value"}), 400

    conn = get_db_connection()
    cursor = conn.execute(
        'UPDATE products SET stock = ?, updated_at = ? WHERE id = ?', (stock, utcnow(), product_id)
    )
    if cursor.rowcount == 0:
        conn.close()
        return jsonify({"error": "Product not found"}), 404
    conn.commit()
    product = conn.execute('SELECT * FROM products WHERE id = ?', (product_id,)).fetchone()
    conn.close()
    logger.info("Stock of product %s set to %s", product_id, stock)
    return jsonify({"product": dict(product)}), 200


# --- Orders & Payments ---
@admin_bp.route('/orders/payment-status', methods=['PATCH'])
@admin_required()
def update_payment_status():
    data = json_body()
    order_id = data.get('order_id')
    payment_status = data.get('payment_status')
    if not order_id or not payment_status:
        return jsonify({"error": "Order ID and payment status are required"}), 400
    if not isinstance(order_id, int) or isinstance(order_id, bool):
        return jsonify({"error": "Order ID must be an integer"}), 400
    if payment_status not in PAYMENT_STATUSES:
        return jsonify({"error": "Invalid payment status"}), 400

    conn = get_db_connection()
    cursor = conn.execute(
        'UPDATE orders SET payment_status = ?, updated_at = ? WHERE id = ?', (payment_status, utcnow(), order_id)
    )
    if cursor.rowcount == 0:
        conn.close()
        return jsonify({"error": "Order not found"}), 404
    log_activity(conn, current_user['id'], "update_payment_status", f"order {order_id} -> {payment_status}")
    conn.commit()
    order = conn.execute('SELECT * FROM orders WHERE id = ?', (order_id,)).fetchone()
    conn.close()
    logger.info("Payment status of order %s manually set to %s", order_id, payment_status)
    return jsonify({"order": dict(order)}), 200


@admin_bp.route('/orders/export', methods=['GET'])
@admin_required()
def export_orders():
    clauses, params = _date_range('o.created_at')
    if request.args.get('status'):
        clauses.append('o.status = ?')
        params.append(request.args['status'])
    query = '''
        SELECT o.*, u.name as user_name, u.email as user_email
        FROM orders o
        JOIN users u ON o.user_id = u.id
    '''
    if clauses:
        query += ' WHERE ' + ' AND '.join(clauses)
    query += ' ORDER BY o.created_at DESC, o.id DESC'

    conn = get_db_connection()
    orders = [dict(row) for row in conn.execute(query, params).fetchall()]
    conn.close()

    if request.args.get('format') != 'csv':
        return jsonify({"orders": orders}), 200

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS, extrasaction='ignore')
    writer.writeheader()
    writer.writerows(orders)
    return Response(
        buffer.getvalue(),
        mimetype='text/csv',
        headers={"Content-Disposition": "attachment; filename=orders.csv"},
    )


@admin_bp.route('/payments/refund', methods=['POST'])
@admin_required()
def refund_payment():
    data = json_body()
    tx_ref = text_field(data, 'tx_ref')
    if not tx_ref:
        return jsonify({"error": "Transaction reference is required"}), 400
    try:
        reason = optional_text(data, 'reason')
    except TypeError as e:
        return jsonify({"error": str(e)}), 400

    conn = get_db_connection()
    payment = find_payment(conn, tx_ref)
    if not payment:
        conn.close()
        return jsonify({"error": "Payment not found"}), 404
    if payment['status'] != 'completed':
        conn.close()
        return jsonify({"error": "Only completed payments can be refunded"}), 400

    amount = data.get('amount')
    if amount is not None:
        try:
            amount = float(amount)
        except (TypeError, ValueError):
            amount = -1
        if not math.isfinite(amount) or amount <= 0 or amount > payment['amount']:
            conn.close()
            return jsonify({"error": "Invalid refund amount"}), 400

    try:
        gateway_response = get_chapa_client().refund(tx_ref, amount=amount, reason=reason)
    except ChapaError as e:
        conn.close()
        logger.error("Refund of %s failed: %s", tx_ref, e.message)
        return jsonify({"success": False, "error": "Refund failed", "details": e.message}), 502

    conn.execute(
        "UPDATE payments SET status = 'refunded', gateway_response = ?, updated_at = ? WHERE id = ?",
        (json.dumps(gateway_response), utcnow(), payment['id']),
    )
    log_activity(conn, current_user['id'], "refund_payment", tx_ref)
    conn.commit()
    refunded = find_payment(conn, tx_ref)
    conn.close()
    logger.info("Payment %s refunded", tx_ref)
    return jsonify({
        "success": True,
        "message": "Payment refunded",
        "payment": row_to_dict(refunded, json_fields=('gateway_response',)),
    }), 200


# --- Activity Logs ---
@admin_bp.route('/activity-logs', methods=['GET'])
@admin_required()
def get_activity_logs():
    limit = min(max(request.args.get('limit', 50, type=int) or 50, 1), 500)
    query = '''
        SELECT l.*, u.name as user_name, u.email as user_email
        FROM user_activity_logs l
        JOIN users u ON l.user_id = u.id
    '''
    params = []
    if request.args.get('user_id'):
        query += ' WHERE l.user_id = ?'
        params.append(request.args.get('user_id', type=int))
    query += ' ORDER BY l.created_at DESC, l.id DESC LIMIT ?'
    params.append(limit)

    conn = get_db_connection()
    rows = conn.execute(query, params).fetchall()
    conn.close()
    return jsonify({"activity_logs": [dict(row) for row in rows]}), 200


# --- System Settings ---
@admin_bp.route('/settings', methods=['GET'])
@admin_required()
def get_system_settings():
    conn = get_db_connection()
    rows = conn.execute('SELECT * FROM system_settings ORDER BY category, key').fetchall()
    conn.close()
    return jsonify({"settings": [row_to_dict(row, bool_fields=('is_public',)) for row in rows]}), 200


@admin_bp.route('/settings', methods=['PUT'])
@admin_required()
def update_system_settings():
    data = json_body()
    key = text_field(data, 'key')
    if not key or data.get('value') is None:
        return jsonify({"error": "Key and value are required"}), 400
    value = str(data['value'])
    try:
        description = optional_text(data, 'description')
        category = optional_text(data, 'category')
    except TypeError as e:
        return jsonify({"error": str(e)}), 400

    conn = get_db_connection()
    existing = conn.execute('SELECT * FROM system_settings WHERE key = ?', (key,)).fetchone()
    if existing:
        conn.execute(
            '''UPDATE system_settings
               SET value = ?, description = COALESCE(?, description), category = COALESCE(?, category),
                   is_public = COALESCE(?, is_public), updated_at = ?
               WHERE key = ?''',
            (value, description, category,
             None if 'is_public' not in data else int(bool(data['is_public'])), utcnow(), key),
        )
    else:
        conn.execute(
            'INSERT INTO system_settings (key, value, description, category, is_public) VALUES (?, ?, ?, ?, ?)',
            (key, value, description, category or 'general', int(bool(data.get('is_public')))),
        )
    log_activity(conn, current_user['id'], "update_setting", key)
    conn.commit()
    setting = conn.execute('SELECT * FROM system_settings WHERE key = ?', (key,)).fetchone()
    conn.close()
    return jsonify({"setting": row_to_dict(setting, bool_fields=('is_public',))}), 200


# --- Dashboard aliases ---
# The admin SPA manages the catalog, users and orders under /api/admin; these reuse the same views.
for rule, endpoint, view, methods in (
    ('/users', 'users', get_all_users, ['GET']),
    ('/users/<int:user_id>', 'delete_user', delete_user, ['DELETE']),
    ('/categories', 'categories', admin_required()(get_all_categories), ['GET']),
    ('/categories', 'create_category', create_category, ['POST']),
    ('/categories/<int:category_id>', 'update_category', update_category, ['PUT']),
    ('/categories/<int:category_id>', 'delete_category', delete_category, ['DELETE']),
    ('/products', 'products', admin_required()(get_all_products), ['GET']),
    ('/products', 'create_product', create_product, ['POST']),
    ('/products/<int:product_id>', 'product', admin_required()(get_product), ['GET']),
    ('/products/<int:product_id>', 'update_product', update_product, ['PUT']),
    ('/products/<int:product_id>', 'delete_product', delete_product, ['DELETE']),
    ('/orders', 'orders', get_all_orders, ['GET']),
    ('/orders/bulk-status', 'bulk_update_order_status', bulk_update_order_status, ['PUT']),
):
    admin_bp.add_url_rule(rule, endpoint=endpoint, view_func=view, methods=methods)
