# content.py
# Storefront content: banners, static pages and email templates (admin CRUD),
# plus the public endpoints the storefront reads them from.

import json
import re
import sqlite3

from flask import Blueprint, jsonify

from auth import admin_required
from database import get_db_connection, row_to_dict, utcnow
from helpers import json_body

content_bp = Blueprint("content", __name__)

SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")

BANNERS = {
    "table": "banners",
    "label": "Banner",
    "key": "banner",
    "required": ("title", "image"),
    "fields": ("title", "description", "image", "link", "is_active"),
    "bool_fields": ("is_active",),
    "json_fields": (),
    "unique_error": None,
}

PAGES = {
    "table": "static_pages",
    "label": "Page",
    "key": "page",
    "required": ("title", "slug", "content"),
    "fields": ("title", "slug", "content", "is_published", "meta_title", "meta_description"),
    "bool_fields": ("is_published",),
    "json_fields": (),
    "unique_error": "Page slug already exists",
}

EMAIL_TEMPLATES = {
    "table": "email_templates",
    "label": "Template",
    "key": "template",
    "required": ("name", "subject", "body"),
    "fields": ("name", "subject", "body", "variables", "is_active"),
    "bool_fields": ("is_active",),
    "json_fields": ("variables",),
    "unique_error": "Template name already exists",
}


class ContentError(ValueError):
    pass


def _required_message(fields):
    names = ", ".join(fields[:-1]) + f" and {fields[-1]}"
    return f"{names.capitalize()} are required"


def _serialize(resource, row):
    return row_to_dict(row, bool_fields=resource["bool_fields"], json_fields=resource["json_fields"])


def _clean(resource, data, partial=False):
    values = {}
    for field in resource["fields"]:
        if field not in data:
            continue
        value = data[field]
        if field in resource["bool_fields"]:
            value = 1 if value else 0
        elif field in resource["json_fields"]:
            if not isinstance(value, list):
                raise ContentError(f"{field} must be a list")
            value = json.dumps(value)
        elif value is not None:
            if not isinstance(value, str):
                raise ContentError(f"{field} must be a string")
            value = value.strip()
        values[field] = value

    for field in resource["required"]:
        if (field in values or not partial) and not values.get(field):
            raise ContentError(_required_message(resource["required"]))
    if 'slug' in values and not SLUG_RE.match(values['slug']):
        raise ContentError("Slug may only contain lowercase letters, digits and hyphens")
    return values


def _list(resource):
    conn = get_db_connection()
    rows = conn.execute(f"SELECT * FROM {resource['table']} ORDER BY created_at DESC, id DESC").fetchall()
    conn.close()
    return jsonify([_serialize(resource, row) for row in rows]), 200


def _create(resource):
    try:
        values = _clean(resource, json_body())
    except ContentError as e:
        return jsonify({"error": str(e)}), 400

    columns = ", ".join(values)
    placeholders = ", ".join("?" for _ in values)
    conn = get_db_connection()
    try:
        cursor = conn.execute(
            f"INSERT INTO {resource['table']} ({columns}) VALUES ({placeholders})", tuple(values.values())
        )
        conn.commit()
    except sqlite3.IntegrityError:
        conn.close()
        return jsonify({"error": resource["unique_error"]}), 409
    row = conn.execute(f"SELECT * FROM {resource['table']} WHERE id = ?", (cursor.lastrowid,)).fetchone()
    conn.close()
    return jsonify({resource["key"]: _serialize(resource, row)}), 201


def _update(resource, item_id):
    not_found = f"{resource['label']} not found"
    try:
        values = _clean(resource, json_body(), partial=True)
    except ContentError as e:
        return jsonify({"error": str(e)}), 400
    if not values:
        return jsonify({"error": "No update data provided."}), 400

    conn = get_db_connection()
    if not conn.execute(f"SELECT 1 FROM {resource['table']} WHERE id = ?", (item_id,)).fetchone():
        conn.close()
        return jsonify({"error": not_found}), 404
    set_clause = ", ".join(f"{key} = ?" for key in values)
    try:
        conn.execute(
            f"UPDATE {resource['table']} SET {set_clause}, updated_at = ? WHERE id = ?",
            (*values.values(), utcnow(), item_id),
        )
        conn.commit()
    except sqlite3.IntegrityError:
        conn.close()
        return jsonify({"error": resource["unique_error"]}), 409
    row = conn.execute(f"SELECT * FROM {resource['table']} WHERE id = ?", (item_id,)).fetchone()
    conn.close()
    return jsonify({resource["key"]: _serialize(resource, row)}), 200


def _delete(resource, item_id):
    conn = get_db_connection()
    cursor = conn.execute(f"DELETE FROM {resource['table']} WHERE id = ?", (item_id,))
    conn.commit()
    conn.close()
    if cursor.rowcount == 0:
        return jsonify({"error": f"{resource['label']} not found"}), 404
    return jsonify({"message": f"{resource['label']} deleted successfully"}), 200


# --- Banner Management ---
@content_bp.route('/admin/banners', methods=['GET'])
@admin_required()
def get_all_banners():
    return _list(BANNERS)


@content_bp.route('/admin/banners', methods=['POST'])
@admin_required()
def create_banner():
    return _create(BANNERS)


@content_bp.route('/admin/banners/<int:banner_id>', methods=['PUT'])
@admin_required()
def update_banner(banner_id):
    return _update(BANNERS, banner_id)


@content_bp.route('/admin/banners/<int:banner_id>', methods=['DELETE'])
@admin_required()
def delete_banner(banner_id):
    return _delete(BANNERS, banner_id)


# --- Static Page Management ---
@content_bp.route('/admin/pages', methods=['GET'])
@admin_required()
def get_all_static_pages():
    return _list(PAGES)


@content_bp.route('/admin/pages', methods=['POST'])
@admin_required()
def create_static_page():
    return _create(PAGES)


@content_bp.route('/admin/pages/<int:page_id>', methods=['PUT'])
@admin_required()
def update_static_page(page_id):
    return _update(PAGES, page_id)


@content_bp.route('/admin/pages/<int:page_id>', methods=['DELETE'])
@admin_required()
def delete_static_page(page_id):
    return _delete(PAGES, page_id)


# --- Email Template Management ---
@content_bp.route('/admin/email-templates', methods=['GET'])
@admin_required()
def get_all_email_templates():
    return _list(EMAIL_TEMPLATES)


@content_bp.route('/admin/email-templates', methods=['POST'])
@admin_required()
def create_email_template():
    return _create(EMAIL_TEMPLATES)


@content_bp.route('/admin/email-templates/<int:template_id>', methods=['PUT'])
@admin_required()
def update_email_template(template_id):
    return _update(EMAIL_TEMPLATES, template_id)


@content_bp.route('/admin/email-templates/<int:template_id>', methods=['DELETE'])
@admin_required()
def delete_email_template(template_id):
    return _delete(EMAIL_TEMPLATES, template_id)


# --- Public Storefront Content ---
@content_bp.route('/banners', methods=['GET'])
def get_active_banners():
    conn = get_db_connection()
    rows = conn.execute(
        'SELECT * FROM banners WHERE is_active = 1 ORDER BY created_at DESC, id DESC'
    ).fetchall()
    conn.close()
    return jsonify([_serialize(BANNERS, row) for row in rows]), 200


@content_bp.route('/pages/<slug>', methods=['GET'])
def get_page(slug):
    conn = get_db_connection()
    page = conn.execute(
        'SELECT * FROM static_pages WHERE slug = ? AND is_published = 1', (slug,)
    ).fetchone()
    conn.close()
    if page is None:
        return jsonify({"error": "Page not found"}), 404
    return jsonify(_serialize(PAGES, page)), 200


@content_bp.route('/settings/public', methods=['GET'])
def get_public_settings():
    conn = get_db_connection()
    rows = conn.execute('SELECT key, value FROM system_settings WHERE is_public = 1 ORDER BY key').fetchall()
    conn.close()
    return jsonify({row['key']: row['value'] for row in rows}), 200
