import os
from datetime import timedelta
from typing import Optional

from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from flask_jwt_extended import JWTManager, jwt_required
from flask_limiter import Limiter
from flask_pymongo import PyMongo
from werkzeug.middleware.proxy_fix import ProxyFix

from auth import ADMIN_ROLE, rate_limit_key, require_role, resolve_identity
from customers import (
    delete_customer,
    get_customer,
    list_customers,
    serialize_customer,
    update_customer,
)
from errors import BadRequestError, register_error_handlers
from orders import (
    OrderTotalValidator,
    create_order,
    delete_order,
    find_order,
    list_orders,
    serialize_orders,
    update_order_status,
)
from repository import serialize_page
from settings import Settings
from uploads import UploadPipeline, stage_upload


def create_app(settings: Optional[Settings] = None, database=None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    settings = settings or Settings.from_env(app.root_path)

    # Honor proxy headers so rate limits see the real client address.
    if settings.trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=settings.trusted_proxy_hops,
            x_proto=settings.trusted_proxy_hops,
            x_host=settings.trusted_proxy_hops,
            x_port=settings.trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = settings.jwt_secret_key
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(
        hours=settings.jwt_access_token_hours
    )
    app.config["MONGO_URI"] = settings.mongo_uri
    app.config["MAX_CONTENT_LENGTH"] = settings.max_content_length
    app.config["RATELIMIT_ENABLED"] = settings.rate_limit_enabled

    os.makedirs(settings.upload_folder, exist_ok=True)
    os.makedirs(settings.temp_upload_folder, exist_ok=True)

    # --- Initialize extensions ---
    CORS(app, supports_credentials=True, origins=list(settings.cors_origins) or "*")
    JWTManager(app)
    db = database if database is not None else PyMongo(app).db
    limiter = Limiter(
        rate_limit_key,
        app=app,
        default_limits=list(settings.default_rate_limits),
        storage_uri=settings.rate_limit_storage_uri,
        headers_enabled=True,
    )
    # Route decorators hold only a weak proxy to the limiter.
    app.limiter = limiter
    register_error_handlers(app)

    upload_pipeline = UploadPipeline(settings)
    # The catalog is re-read on every checkout; prices are never cached.
    order_validator = OrderTotalValidator(
        settings, lambda: db.products.find({}, {"price": 1, "title": 1})
    )

    def query_input():
        return request.args.to_dict(flat=False)

    def json_body():
        payload = request.get_json(silent=True)
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise BadRequestError("Request body must be a JSON object.")
        return payload

    def require_admin():
        return require_role(resolve_identity(db.users), ADMIN_ROLE)

    # --- ROUTES ---

    @app.route("/health")
    @limiter.exempt
    def health():
        return {"status": "ok"}, 200

    @app.route("/uploads/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(settings.upload_folder, filename)

    @app.route("/upload", methods=["POST"])
    @jwt_required()
    def upload_file():
        identity = resolve_identity(db.users)
        artifact = stage_upload(request.files.get("file"), settings.temp_upload_folder)
        stored = upload_pipeline.process(artifact)
        app.logger.info(
            "Stored upload %s for %s", stored.file_name, identity.email
        )
        return jsonify(stored.to_dict()), 201

    # Customers

    @app.route("/customers", methods=["GET"])
    @limiter.limit(settings.list_rate_limit)
    @jwt_required()
    def list_customers_route():
        require_admin()
        page = list_customers(db, query_input(), settings)
        return jsonify(serialize_page(page, "customers", "totalUsers", serialize_customer))

    @app.route("/customers/<customer_id>", methods=["GET"])
    @jwt_required()
    def get_customer_route(customer_id: str):
        require_admin()
        return jsonify(serialize_customer(get_customer(db, customer_id)))

    @app.route("/customers/<customer_id>", methods=["PATCH"])
    @jwt_required()
    def update_customer_route(customer_id: str):
        admin = require_admin()
        payload = json_body()
        updated = update_customer(db, customer_id, payload, settings)
        app.logger.info("Customer %s updated by %s", customer_id, admin.email)
        return jsonify(serialize_customer(updated))

    @app.route("/customers/<customer_id>", methods=["DELETE"])
    @jwt_required()
    def delete_customer_route(customer_id: str):
        admin = require_admin()
        deleted = delete_customer(db, customer_id)
        app.logger.info("Customer %s deleted by %s", customer_id, admin.email)
        return jsonify(serialize_customer(deleted))

    # Orders

    @app.route("/orders", methods=["POST"])
    @jwt_required()
    def create_order_route():
        identity = resolve_identity(db.users)
        payload = json_body()
        order = create_order(db, order_validator, payload, identity)
        return jsonify(serialize_orders(db, [order])[0])

    @app.route("/orders/all", methods=["GET"])
    @limiter.limit(settings.list_rate_limit)
    @jwt_required()
    def list_orders_route():
        require_admin()
        page = list_orders(db, query_input(), settings)
        response = serialize_page(page, "orders", "totalOrders")
        response["orders"] = serialize_orders(db, page.items)
        return jsonify(response)

    @app.route("/orders/all/me", methods=["GET"])
    @limiter.limit(settings.list_rate_limit)
    @jwt_required()
    def list_own_orders_route():
        identity = resolve_identity(db.users)
        page = list_orders(db, query_input(), settings, owner=identity)
        response = serialize_page(page, "orders", "totalOrders")
        response["orders"] = serialize_orders(db, page.items)
        return jsonify(response)

    @app.route("/orders/<order_number>", methods=["GET"])
    @jwt_required()
    def get_order_route(order_number: str):
        require_admin()
        return jsonify(serialize_orders(db, [find_order(db, order_number)])[0])

    @app.route("/orders/me/<order_number>", methods=["GET"])
    @jwt_required()
    def get_own_order_route(order_number: str):
        identity = resolve_identity(db.users)
        order = find_order(db, order_number, owner=identity)
        return jsonify(serialize_orders(db, [order])[0])

    @app.route("/orders/<order_number>", methods=["PATCH"])
    @jwt_required()
    def update_order_route(order_number: str):
        admin = require_admin()
        payload = json_body()
        updated = update_order_status(db, order_number, payload.get("status"))
        app.logger.info(
            "Order %s set to %s by %s", order_number, updated.get("status"), admin.email
        )
        return jsonify(serialize_orders(db, [updated])[0])

    @app.route("/orders/<order_id>", methods=["DELETE"])
    @jwt_required()
    def delete_order_route(order_id: str):
        admin = require_admin()
        deleted = delete_order(db, order_id)
        app.logger.info("Order %s deleted by %s", order_id, admin.email)
        return jsonify(serialize_orders(db, [deleted])[0])

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
