# catalog.py
# Categories and products. Reads are public; writes require an admin.
# Products accept JSON, or multipart form data with an `image` file.

import math
import os
import secrets
import sqlite3

from flask import Blueprint, current_app, jsonify, request
from werkzeug.utils import secure_filename

from auth import admin_required
from database import get_db_connection, utcnow
from helpers import json_body, optional_text, text_field

catalog_bp = Blueprint("catalog", __name__)

PRODUCT_FIELDS = ("name", "description", "price", "stock", "image_url", "category_id")
ALLOWED_IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "webp", "gif"}

PRODUCT_SELECT = '''
    SELECT p.*, c.name as category_name
    FROM products p
    LEFT JOIN categories c ON p.category_id = c.id
'''


class ValidationError(ValueError):
    pass


def _parse_price(value):
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise ValidationError("Invalid price")
    if not math.isfinite(price) or price <= 0:
        raise ValidationError("Invalid price")
    return round(price, 2)


def _parse_stock(value):
    try:
        stock = int(value)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError("Invalid stock")
    if stock < 0 or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError("Invalid stock")
    return stock


def allowed_image(filename):
    return "." in filename and filename.rsplit(".", 1)[1].lower() in ALLOWED_IMAGE_EXTENSIONS


def save_image(file):
    """Stores an uploaded product image and returns the URL it is served from."""
    if not file.filename or not allowed_image(file.filename):
        raise ValidationError("Image must be a PNG, JPG, WEBP or GIF file")
    stem, ext = os.path.splitext(file.filename)
    filename = f"product_{secure_filename(stem) or 'image'}_{secrets.token_hex(6)}{ext.lower()}"
    upload_dir = current_app.config["UPLOAD_FOLDER"]
    os.makedirs(upload_dir, exist_ok=True)
    file.save(os.path.join(upload_dir, filename))
    return f"/uploads/{filename}"


def product_payload():
    """The product fields of a JSON or multipart request."""
    if request.mimetype == "multipart/form-data":
        return request.form.to_dict()
    return json_body()


def uploaded_image():
    image = request.files.get("image")
    return image if image is not None and image.filename else None


def _resolve_category(conn, data):
    """Returns the category id named by `category_id`, or found/created by `category` name.

    An empty `category_id` clears the category.
    """
    if 'category_id' in data:
        category_id = data['category_id']
        if category_id in ('', None):
            return None
        try:
            category_id = int(category_id)
        except (TypeError, ValueError, OverflowError):
            raise ValidationError("Invalid category ID")
        if not conn.execute('SELECT 1 FROM categories WHERE id = ?', (category_id,)).fetchone():
            raise ValidationError("Invalid category ID")
        return category_id

    name = text_field(data, 'category')
    row = conn.execute('SELECT id FROM categories WHERE name = ?', (name,)).fetchone()
    if row:
        return row['id']
    return conn.execute('INSERT INTO categories (name) VALUES (?)', (name,)).lastrowid


def _clean_product(conn, data, partial=False):
    product = {}
    if 'name' in data or not partial:
        name = text_field(data, 'name')
        if not name:
            raise ValidationError("Name cannot be empty")
        product['name'] = name
    try:
        if 'description' in data:
            product['description'] = optional_text(data, 'description')
        if 'image_url' in data:
            product['image_url'] = optional_text(data, 'image_url')
    except TypeError as e:
        raise ValidationError(str(e))
    if 'price' in data or not partial:
        product['price'] = _parse_price(data.get('price'))
    if 'stock' in data:
        product['stock'] = _parse_stock(data['stock'])
    if 'category_id' in data or text_field(data, 'category'):
        product['category_id'] = _resolve_category(conn, data)
    return product


def fetch_product(conn, product_id):
    return conn.execute(PRODUCT_SELECT + ' WHERE p.id = ?', (product_id,)).fetchone()


# --- Category Management Endpoints ---
@catalog_bp.route('/categories', methods=['GET'])
def get_all_categories():
    conn = get_db_connection()
    categories_cursor = conn.execute('''
        SELECT c.*, COUNT(p.id) as product_count
        FROM categories c
        LEFT JOIN products p ON p.category_id = c.id
        GROUP BY c.id
        ORDER BY c.name
    ''').fetchall()
    conn.close()
    return jsonify([dict(row) for row in categories_cursor]), 200


@catalog_bp.route('/categories', methods=['POST'])
@admin_required()
def create_category():
    data = json_body()
    name = text_field(data, 'name')
    if not name:
        return jsonify({"error": "Category name is required"}), 400
    try:
        description = optional_text(data, 'description')
        image = optional_text(data, 'image')
    except TypeError as e:
        return jsonify({"error": str(e)}), 400

    conn = get_db_connection()
    try:
        cursor = conn.execute(
            "INSERT INTO categories (name, description, image) VALUES (?, ?, ?)",
            (name, description, image),
        )
        conn.commit()
    except sqlite3.IntegrityError:
        conn.close()
        return jsonify({"error": "Category name already exists"}), 409
    category = conn.execute('SELECT * FROM categories WHERE id = ?', (cursor.lastrowid,)).fetchone()
    conn.close()
    return jsonify(dict(category)), 201


@catalog_bp.route('/categories/<int:category_id>', methods=['PUT'])
@admin_required()
def update_category(category_id):
    data = json_body()
    try:
        updates = {key: optional_text(data, key) for key in ('name', 'description', 'image') if key in data}
    except TypeError as e:
        return jsonify({"error": str(e)}), 400
    if not updates:
        return jsonify({"error": "No update data provided."}), 400
    if 'name' in updates and not updates['name']:
        return jsonify({"error": "Category name is required"}), 400

    conn = get_db_connection()
    if not conn.execute('SELECT 1 FROM categories WHERE id = ?', (category_id,)).fetchone():
        conn.close()
        return jsonify({"error": "Category not found"}), 404
    set_clause = ", ".join(f"{key} = ?" for key in updates)
    try:
        conn.execute(
            f"UPDATE categories SET {set_clause}, updated_at = ? WHERE id = ?",
            (*updates.values(), utcnow(), category_id),
        )
        conn.commit()
    except sqlite3.IntegrityError:
        conn.close()
        return jsonify({"error": "Category name already exists"}), 409
    category = conn.execute('SELECT * FROM categories WHERE id = ?', (category_id,)).fetchone()
    conn.close()
    return jsonify(dict(category)), 200


@catalog_bp.route('/categories/<int:category_id>', methods=['DELETE'])
@admin_required()
def delete_category(category_id):
    conn = get_db_connection()
    if not conn.execute('SELECT 1 FROM categories WHERE id = ?', (category_id,)).fetchone():
        conn.close()
        return jsonify({"error": "Category not found"}), 404
    if conn.execute('SELECT 1 FROM products WHERE category_id = ? LIMIT 1', (category_id,)).fetchone():
        conn.close()
        return jsonify({"error": "Cannot delete category with associated products"}), 400
    conn.execute('DELETE FROM categories WHERE id = ?', (category_id,))
    conn.commit()
    conn.close()
    return jsonify({"message": "Category deleted"}), 200


# --- Product API Endpoints ---
@catalog_bp.route('/products', methods=['GET'])
def get_all_products():
    clauses, params = [], []
    if request.args.get('category_id'):
        clauses.append('p.category_id = ?')
        params.append(request.args.get('category_id', type=int))
    if request.args.get('search'):
        clauses.append('(p.name LIKE ? OR p.description LIKE ?)')
        pattern = f"%{request.args['search']}%"
        params.extend([pattern, pattern])
    if request.args.get('min_price') is not None:
        clauses.append('p.price >= ?')
        params.append(request.args.get('min_price', type=float))
    if request.args.get('max_price') is not None:
        clauses.append('p.price <= ?')
        params.append(request.args.get('max_price', type=float))
    if request.args.get('in_stock') in ('1', 'true'):
        clauses.append('p.stock > 0')

    query = PRODUCT_SELECT
    if clauses:
        query += ' WHERE ' + ' AND '.join(clauses)
    query += ' ORDER BY p.created_at DESC, p.id DESC'

    conn = get_db_connection()
    products_cursor = conn.execute(query, params).fetchall()
    conn.close()
    return jsonify([dict(row) for row in products_cursor]), 200


@catalog_bp.route('/products/<int:product_id>', methods=['GET'])
def get_product(product_id):
    conn = get_db_connection()
    product = fetch_product(conn, product_id)
    conn.close()
    if product is None:
        return jsonify({"error": "Product not found"}), 404
    return jsonify(dict(product)), 200


@catalog_bp.route('/products', methods=['POST'])
@admin_required()
def create_product():
    data = product_payload()
    if not data.get('name') or data.get('price') in (None, ''):
        return jsonify({"error": "Name and price are required fields."}), 400

    conn = get_db_connection()
    try:
        product = _clean_product(conn, data)
        image = uploaded_image()
        if image is not None:
            product['image_url'] = save_image(image)
    except ValidationError as e:
        conn.close()
        return jsonify({"error": str(e)}), 400
    product.setdefault('stock', 0)

    columns = ", ".join(product)
    placeholders = ", ".join("?" for _ in product)
    cursor = conn.execute(f"INSERT INTO products ({columns}) VALUES ({placeholders})", tuple(product.values()))
    conn.commit()
    created = fetch_product(conn, cursor.lastrowid)
    conn.close()
    return jsonify(dict(created)), 201


@catalog_bp.route('/products/<int:product_id>', methods=['PUT'])
@admin_required()
def update_product(product_id):
    data = product_payload()
    image = uploaded_image()
    if not data and image is None:
        return jsonify({"error": "No update data provided."}), 400

    conn = get_db_connection()
    if conn.execute('SELECT 1 FROM products WHERE id = ?', (product_id,)).fetchone() is None:
        conn.close()
        return jsonify({"error": "Product not found"}), 404

    try:
        updates = _clean_product(conn, {k: v for k, v in data.items() if k in PRODUCT_FIELDS + ('category',)}, partial=True)
        if image is not None:
            updates['image_url'] = save_image(image)
    except ValidationError as e:
        conn.close()
        return jsonify({"error": str(e)}), 400
    if not updates:
        conn.close()
        return jsonify({"error": "No update data provided."}), 400

    set_clause = ", ".join(f"{key} = ?" for key in updates)
    conn.execute(
        f"UPDATE products SET {set_clause}, updated_at = ? WHERE id = ?",
        (*updates.values(), utcnow(), product_id),
    )
    conn.commit()
    updated = fetch_product(conn, product_id)
    conn.close()
    return jsonify(dict(updated)), 200


@catalog_bp.route('/products/<int:product_id>', methods=['DELETE'])
@admin_required()
def delete_product(product_id):
    conn = get_db_connection()
    if conn.execute('SELECT 1 FROM products WHERE id = ?', (product_id,)).fetchone() is None:
        conn.close()
        return jsonify({"error": "Product not found"}), 404
    if conn.execute('SELECT 1 FROM order_items WHERE product_id = ? LIMIT 1', (product_id,)).fetchone():
        conn.close()
        return jsonify({"error": "Cannot delete a product that appears in orders"}), 409
    conn.execute('DELETE FROM products WHERE id = ?', (product_id,))
    conn.commit()
    conn.close()
    return jsonify({"message": f"Product with ID {product_id} deleted"}), 200
