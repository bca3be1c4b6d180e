# app.py
# E-Com Ethiopia backend: users, catalog, orders, Chapa payments, admin dashboard and content.
#
# To Run This Backend:
# 1. Activate virtual environment: source venv/bin/activate
# 2. Install dependencies: pip install -e .
# 3. Copy .env.example to .env and fill in the Chapa and mail settings
# 4. Run from your terminal: python app.py (or: flask --app app run)
# 5. The server will start on http://127.0.0.1:5000

import datetime
import logging
import os
import time
from logging.handlers import RotatingFileHandler

import click
from flask import Flask, jsonify, send_from_directory

from admin import admin_bp
from auth import auth_bp
from catalog import catalog_bp
from config import Config
from content import content_bp
from database import create_admin, get_db_connection, init_db
from extensions import bcrypt, cors, jwt
from orders import orders_bp
from payments import payments_bp
from users import users_bp

START_TIME = time.time()

logger = logging.getLogger(__name__)


def configure_logging(app):
    level = getattr(logging, app.config.get("LOG_LEVEL", "INFO"), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")

    log_dir = app.config.get("LOG_DIR")
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handler = RotatingFileHandler(os.path.join(log_dir, "ecom_ethiopia.log"), maxBytes=1_000_000, backupCount=5)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
        handler.setLevel(level)
        logging.getLogger().addHandler(handler)


# --- App Setup ---
app = Flask(__name__)
app.config.from_object(Config)
app.config["JWT_ACCESS_TOKEN_EXPIRES"] = datetime.timedelta(hours=Config.JWT_ACCESS_TOKEN_HOURS)

cors.init_app(app)
bcrypt.init_app(app)
jwt.init_app(app)
configure_logging(app)

app.register_blueprint(auth_bp, url_prefix="/api/auth")
app.register_blueprint(users_bp, url_prefix="/api/users")
app.register_blueprint(catalog_bp, url_prefix="/api")
app.register_blueprint(orders_bp, url_prefix="/api/orders")
app.register_blueprint(payments_bp, url_prefix="/api/payments")
app.register_blueprint(admin_bp, url_prefix="/api/admin")
app.register_blueprint(content_bp, url_prefix="/api")


@app.route('/health', methods=['GET'])
def health_check():
    return jsonify({
        "status": "OK",
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "uptime": round(time.time() - START_TIME, 3),
    }), 200


@app.route('/uploads/<path:filename>', methods=['GET'])
def uploaded_file(filename):
    return send_from_directory(app.config["UPLOAD_FOLDER"], filename)


# --- Error Handlers ---
@app.errorhandler(404)
def route_not_found(_error):
    return jsonify({"error": "Route not found"}), 404


@app.errorhandler(405)
def method_not_allowed(_error):
    return jsonify({"error": "Method not allowed"}), 405


@app.errorhandler(413)
def payload_too_large(_error):
    return jsonify({"error": "Upload is too large"}), 413


@app.errorhandler(500)
def internal_error(error):
    logger.error("Unhandled error", exc_info=getattr(error, "original_exception", None) or error)
    return jsonify({"error": "Internal server error"}), 500


# --- CLI Commands ---
@app.cli.command("init-db")
def init_db_command():
    """Create the tables and seed the default admin, settings and email templates."""
    init_db()


@app.cli.command("create-admin")
@click.argument("email")
@click.argument("password")
@click.option("--name", default="Admin User", help="Display name for a newly created admin.")
def create_admin_command(email, password, name):
    """Create an admin account, or promote the existing account with EMAIL."""
    conn = get_db_connection()
    created = create_admin(conn, email.strip().lower(), password, name)
    conn.commit()
    conn.close()
    click.echo(f"Admin {'created' if created else 'promoted'}: {email}")


# --- Main Execution Block ---
if __name__ == '__main__':
    init_db()
    app.run(debug=True, port=5000)
