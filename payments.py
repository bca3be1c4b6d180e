# payments.py
# Chapa checkout, payment verification/webhooks and saved payment methods.

import json
import logging

from flask import Blueprint, current_app, jsonify, request
from flask_jwt_extended import current_user, jwt_required

from auth import is_admin, log_activity
from chapa import ChapaClient, ChapaError, generate_tx_ref, verify_signature
from database import get_db_connection, row_to_dict, utcnow
from helpers import json_body, optional_text, text_field
from mailer import send_template_email
from orders import order_payments

logger = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__)

FAILED_GATEWAY_STATUSES = ("failed", "cancelled")
FINAL_PAYMENT_STATUSES = ("completed", "refunded")
PAYMENT_METHOD_TYPES = ("card", "bank", "mobile")
PAYMENT_METHOD_FIELDS = "id, type, provider, last4, brand, expiry_month, expiry_year, is_default, created_at, updated_at"


def get_chapa_client():
    return ChapaClient.from_config(current_app.config)


def apply_gateway_status(conn, payment, gateway_status, gateway_data=None):
    """Applies a status reported by Chapa to the payment and its order. The caller commits.

    Returns the resulting payment status. Completed and refunded payments are never
    downgraded, so replayed webhooks and repeated verifications are harmless.
    """
    if payment['status'] in FINAL_PAYMENT_STATUSES:
        return payment['status']

    gateway_status = (gateway_status or '').lower()
    if gateway_status == 'success':
        new_status = 'completed'
    elif gateway_status in FAILED_GATEWAY_STATUSES:
        new_status = 'failed'
    else:
        return payment['status']

    if gateway_data and new_status == 'completed' and gateway_data.get('amount') is not None:
        try:
            if abs(float(gateway_data['amount']) - payment['amount']) > 0.01:
                logger.warning("Chapa amount %s for %s differs from expected %.2f",
                               gateway_data['amount'], payment['transaction_id'], payment['amount'])
        except (TypeError, ValueError):
            logger.warning("Chapa sent a non-numeric amount for %s", payment['transaction_id'])

    conn.execute(
        'UPDATE payments SET status = ?, gateway_response = COALESCE(?, gateway_response), updated_at = ? WHERE id = ?',
        (new_status, json.dumps(gateway_data) if gateway_data else None, utcnow(), payment['id']),
    )
    if new_status == 'completed':
        conn.execute(
            '''UPDATE orders
               SET payment_status = 'paid',
                   status = CASE WHEN status = 'pending' THEN 'confirmed' ELSE status END,
                   updated_at = ?
               WHERE id = ?''',
            (utcnow(), payment['order_id']),
        )
    else:
        # Another attempt may already have paid for the order.
        conn.execute(
            "UPDATE orders SET payment_status = 'failed', updated_at = ? WHERE id = ? AND payment_status != 'paid'",
            (utcnow(), payment['order_id']),
        )
    logger.info("Payment %s: %s -> %s (gateway status %s)",
                payment['transaction_id'], payment['status'], new_status, gateway_status)
    return new_status


def reconcile(conn, payment, gateway_status, gateway_data=None):
    """Applies and commits a gateway status, then notifies the customer of a completed payment."""
    previous = payment['status']
    new_status = apply_gateway_status(conn, payment, gateway_status, gateway_data)
    conn.commit()
    if new_status == 'completed' and previous != 'completed':
        _send_confirmation(conn, payment['order_id'])
    return new_status


def _send_confirmation(conn, order_id):
    order = conn.execute('SELECT * FROM orders WHERE id = ?', (order_id,)).fetchone()
    if not order or not order['customer_email']:
        return
    send_template_email(
        order['customer_email'],
        "order_confirmation",
        {
            "name": order['customer_name'] or "customer",
            "order_id": order['id'],
            "total": f"{order['total_amount']:.2f}",
            "currency": current_app.config.get("CHAPA_CURRENCY", "ETB"),
        },
        "Order #{{order_id}} confirmed",
        "<p>Thank you, {{name}}! Your payment of {{total}} {{currency}} for order #{{order_id}} was received.</p>",
    )


def find_payment(conn, tx_ref):
    return conn.execute('SELECT * FROM payments WHERE transaction_id = ?', (tx_ref,)).fetchone()


# --- Checkout & Verification Endpoints ---
@payments_bp.route('/initiate', methods=['POST'])
@jwt_required()
def initiate_payment():
    data = json_body()
    order_id = data.get('order_id')
    customer = {field: text_field(data, field) for field in ('email', 'first_name', 'last_name', 'phone_number')}
    if not order_id or not all(customer.values()):
        return jsonify({
            "success": False,
            "error": "Order ID, email, name, and phone number are required",
        }), 400
    if not isinstance(order_id, int) or isinstance(order_id, bool):
        return jsonify({"success": False, "error": "Order ID must be an integer"}), 400

    conn = get_db_connection()
    order = conn.execute('SELECT * FROM orders WHERE id = ?', (order_id,)).fetchone()
    if not order:
        conn.close()
        return jsonify({"success": False, "error": "Order not found"}), 404
    if order['user_id'] != current_user['id']:
        conn.close()
        return jsonify({"success": False, "error": "You can only pay for your own orders"}), 403
    if order['payment_status'] == 'paid':
        conn.close()
        return jsonify({"success": False, "error": "Order is already paid"}), 409
    if order['status'] == 'cancelled':
        conn.close()
        return jsonify({"success": False, "error": "Cannot pay for a cancelled order"}), 400

    config = current_app.config
    tx_ref = generate_tx_ref(order['id'])
    try:
        checkout_url = get_chapa_client().initialize(
            amount=order['total_amount'],
            tx_ref=tx_ref,
            email=customer['email'],
            first_name=customer['first_name'],
            last_name=customer['last_name'],
            phone_number=customer['phone_number'],
            callback_url=f"{config['BACKEND_URL']}/api/payments/callback",
            return_url=f"{config['FRONTEND_URL']}/payment/success?tx_ref={tx_ref}",
            title=config.get("STORE_NAME", "E-Com Ethiopia")[:16],
            description="Thank you for shopping with us",
        )
    except ChapaError as e:
        conn.close()
        logger.error("Payment initiation for order %s failed: %s", order['id'], e.message)
        return jsonify({"success": False, "error": "Payment failed", "details": e.message}), 502

    conn.execute('UPDATE orders SET payment_tx_ref = ?, updated_at = ? WHERE id = ?', (tx_ref, utcnow(), order['id']))
    conn.execute(
        "INSERT INTO payments (order_id, amount, payment_method, transaction_id, status) VALUES (?, ?, 'chapa', ?, 'pending')",
        (order['id'], order['total_amount'], tx_ref),
    )
    log_activity(conn, current_user['id'], "initiate_payment", tx_ref)
    conn.commit()
    conn.close()

    logger.info("Payment %s initiated for order %s", tx_ref, order['id'])
    return jsonify({"success": True, "checkout_url": checkout_url, "tx_ref": tx_ref}), 200


@payments_bp.route('/callback', methods=['GET', 'POST'])
def payment_callback():
    """Chapa's callback_url hit; reconciles the transaction when a reference is supplied."""
    body = json_body()
    tx_ref = (request.args.get('tx_ref') or request.args.get('trx_ref')
              or text_field(body, 'tx_ref') or text_field(body, 'trx_ref'))
    if tx_ref:
        conn = get_db_connection()
        payment = find_payment(conn, tx_ref)
        if payment and payment['status'] not in FINAL_PAYMENT_STATUSES:
            try:
                data = get_chapa_client().verify(tx_ref)
                reconcile(conn, payment, data.get('status'), data)
            except ChapaError as e:
                logger.error("Callback verification for %s failed: %s", tx_ref, e.message)
        conn.close()
    return "OK", 200


@payments_bp.route('/chapa-webhook', methods=['POST'])
def chapa_webhook():
    raw_body = request.get_data()
    payload = request.get_json(silent=True)
    if not payload or not isinstance(payload, dict):
        return jsonify({"error": "Invalid payload"}), 400

    secret = current_app.config.get("CHAPA_WEBHOOK_SECRET")
    if secret:
        signature = request.headers.get("x-chapa-signature") or request.headers.get("Chapa-Signature")
        if not verify_signature(raw_body, signature, secret):
            logger.warning("Rejected Chapa webhook with an invalid signature")
            return jsonify({"error": "Invalid signature"}), 403

    tx_ref = text_field(payload, 'tx_ref') or text_field(payload, 'trx_ref')
    if not tx_ref:
        return jsonify({"error": "Transaction reference is required"}), 400

    conn = get_db_connection()
    payment = find_payment(conn, tx_ref)
    if not payment:
        conn.close()
        logger.warning("Chapa webhook for unknown tx_ref %s", tx_ref)
        return jsonify({"error": "Payment not found"}), 404

    if secret:
        status, gateway_data = payload.get('status'), payload
    else:
        # Unsigned notifications are only a hint; ask Chapa for the real status.
        try:
            gateway_data = get_chapa_client().verify(tx_ref)
        except ChapaError as e:
            conn.close()
            return jsonify({"error": "Webhook processing failed", "details": e.message}), 502
        status = gateway_data.get('status')

    new_status = reconcile(conn, payment, status, gateway_data)
    conn.close()
    return jsonify({"message": "Webhook processed successfully", "status": new_status}), 200


@payments_bp.route('/verify', methods=['POST'])
@jwt_required()
def verify_payment():
    tx_ref = text_field(json_body(), 'tx_ref')
    if not tx_ref:
        return jsonify({"success": False, "error": "Transaction reference is required"}), 400

    conn = get_db_connection()
    payment = find_payment(conn, tx_ref)
    order = payment and conn.execute('SELECT * FROM orders WHERE id = ?', (payment['order_id'],)).fetchone()
    if not payment or not order or (order['user_id'] != current_user['id'] and not is_admin()):
        conn.close()
        return jsonify({"success": False, "error": "Payment not found"}), 404

    if payment['status'] == 'completed' and order['payment_status'] == 'paid':
        conn.close()
        return jsonify({"success": True, "message": "Payment already verified", "order_id": order['id']}), 200

    try:
        gateway_data = get_chapa_client().verify(tx_ref)
    except ChapaError as e:
        conn.close()
        logger.error("Verification of %s failed: %s", tx_ref, e.message)
        return jsonify({
            "success": False,
            "message": "Payment verification unavailable, please check with support",
        }), 200

    new_status = reconcile(conn, payment, gateway_data.get('status'), gateway_data)
    conn.close()
    if new_status == 'completed':
        return jsonify({
            "success": True,
            "message": "Payment verified and order updated",
            "order_id": order['id'],
        }), 200
    return jsonify({
        "success": False,
        "message": "Payment not completed",
        "status": new_status,
        "order_id": order['id'],
    }), 200


@payments_bp.route('/status/<int:order_id>', methods=['GET'])
@jwt_required()
def get_payment_status(order_id):
    conn = get_db_connection()
    order = conn.execute('SELECT * FROM orders WHERE id = ?', (order_id,)).fetchone()
    if not order or (order['user_id'] != current_user['id'] and not is_admin()):
        conn.close()
        return jsonify({"error": "Order not found"}), 404

    latest = conn.execute(
        'SELECT * FROM payments WHERE order_id = ? ORDER BY id DESC LIMIT 1', (order_id,)
    ).fetchone()
    if latest and latest['status'] == 'pending':
        try:
            gateway_data = get_chapa_client().verify(latest['transaction_id'])
            reconcile(conn, latest, gateway_data.get('status'), gateway_data)
        except ChapaError as e:
            logger.warning("Could not refresh payment %s: %s", latest['transaction_id'], e.message)
        order = conn.execute('SELECT * FROM orders WHERE id = ?', (order_id,)).fetchone()

    result = {
        "order_id": order['id'],
        "status": order['status'],
        "payment_status": order['payment_status'],
        "payment_tx_ref": order['payment_tx_ref'],
        "payments": order_payments(conn, order_id),
    }
    conn.close()
    return jsonify(result), 200


# --- Saved Payment Methods ---
def _optional_int(data, key):
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"{key} must be an integer")
    return value


def _fetch_method(conn, method_id, user_id):
    return conn.execute(
        f'SELECT {PAYMENT_METHOD_FIELDS} FROM user_payment_methods WHERE id = ? AND user_id = ?',
        (method_id, user_id),
    ).fetchone()


@payments_bp.route('/methods', methods=['GET'])
@jwt_required()
def get_payment_methods():
    conn = get_db_connection()
    rows = conn.execute(
        f'SELECT {PAYMENT_METHOD_FIELDS} FROM user_payment_methods WHERE user_id = ? ORDER BY is_default DESC, id',
        (current_user['id'],),
    ).fetchall()
    conn.close()
    methods = [row_to_dict(row, bool_fields=('is_default',)) for row in rows]
    return jsonify({"success": True, "payment_methods": methods, "count": len(methods)}), 200


@payments_bp.route('/methods', methods=['POST'])
@jwt_required()
def add_payment_method():
    data = json_body()
    method_type = data.get('type')
    provider = text_field(data, 'provider')
    if not method_type or not provider:
        return jsonify({"error": "Type and provider are required"}), 400
    if method_type not in PAYMENT_METHOD_TYPES:
        return jsonify({"error": "Type must be one of card, bank, mobile"}), 400
    last4 = data.get('last4')
    if last4 is not None and not (isinstance(last4, str) and len(last4) == 4 and last4.isdigit()):
        return jsonify({"error": "last4 must be exactly 4 digits"}), 400
    try:
        brand = optional_text(data, 'brand')
        chapa_token = optional_text(data, 'chapa_token')
        expiry_month = _optional_int(data, 'expiry_month')
        expiry_year = _optional_int(data, 'expiry_year')
    except TypeError as e:
        return jsonify({"error": str(e)}), 400
    if expiry_month is not None and not 1 <= expiry_month <= 12:
        return jsonify({"error": "expiry_month must be between 1 and 12"}), 400

    is_default = bool(data.get('is_default'))
    conn = get_db_connection()
    if is_default:
        conn.execute('UPDATE user_payment_methods SET is_default = 0 WHERE user_id = ?', (current_user['id'],))
    cursor = conn.execute(
        '''INSERT INTO user_payment_methods
           (user_id, type, provider, last4, brand, expiry_month, expiry_year, is_default, chapa_token)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)''',
        (current_user['id'], method_type, provider, last4, brand,
         expiry_month, expiry_year, 1 if is_default else 0, chapa_token),
    )
    conn.commit()
    method = _fetch_method(conn, cursor.lastrowid, current_user['id'])
    conn.close()
    return jsonify({"success": True, "payment_method": row_to_dict(method, bool_fields=('is_default',))}), 201


@payments_bp.route('/methods/<int:method_id>', methods=['PUT'])
@jwt_required()
def update_payment_method(method_id):
    data = json_body()
    conn = get_db_connection()
    if not _fetch_method(conn, method_id, current_user['id']):
        conn.close()
        return jsonify({"error": "Payment method not found"}), 404

    is_default = bool(data.get('is_default'))
    if is_default:
        conn.execute('UPDATE user_payment_methods SET is_default = 0 WHERE user_id = ?', (current_user['id'],))
    conn.execute(
        'UPDATE user_payment_methods SET is_default = ?, updated_at = ? WHERE id = ?',
        (1 if is_default else 0, utcnow(), method_id),
    )
    conn.commit()
    method = _fetch_method(conn, method_id, current_user['id'])
    conn.close()
    return jsonify({"success": True, "payment_method": row_to_dict(method, bool_fields=('is_default',))}), 200


@payments_bp.route('/methods/<int:method_id>', methods=['DELETE'])
@jwt_required()
def delete_payment_method(method_id):
    conn = get_db_connection()
    if not _fetch_method(conn, method_id, current_user['id']):
        conn.close()
        return jsonify({"error": "Payment method not found"}), 404
    conn.execute('DELETE FROM user_payment_methods WHERE id = ?', (method_id,))
    conn.commit()
    conn.close()
    return jsonify({"success": True, "message": "Payment method deleted"}), 200
