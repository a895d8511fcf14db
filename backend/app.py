import os
import re
from datetime import timedelta
from functools import wraps
from typing import Dict, Optional

import click
import pymongo
from bson import ObjectId
from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from flask_cors import CORS
from flask_pymongo import PyMongo
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.middleware.proxy_fix import ProxyFix

from addresses import AddressBook
from cart import CartEngine
from catalog import ProductCatalog
from credentials import DEFAULT_BCRYPT_ROUNDS, MAX_PASSWORD_BYTES, PasswordHasher, TokenService
from documents import serialize_document, utc_now
from errors import (
    ConfigurationError,
    InvalidArgument,
    MissingToken,
    PersistenceFailure,
    ShopError,
)

load_dotenv()


def env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def create_app(test_config: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application.

    ``database`` lets callers hand in an already connected database; otherwise
    one is opened from ``MONGO_URI`` through Flask-PyMongo.
    """
    app = Flask(__name__)

    # --- Configuration ---
    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "")
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/ecommerce"
    )
    app.config["USERS_COLLECTION"] = os.getenv("USERS_COLLECTION", "Users")
    app.config["PRODUCTS_COLLECTION"] = os.getenv("PRODUCTS_COLLECTION", "Products")
    app.config["BCRYPT_ROUNDS"] = env_int("BCRYPT_ROUNDS", DEFAULT_BCRYPT_ROUNDS)
    app.config["ACCESS_TOKEN_EXPIRES"] = timedelta(
        hours=env_int("ACCESS_TOKEN_EXPIRES_HOURS", 24)
    )
    app.config["REFRESH_TOKEN_EXPIRES"] = timedelta(
        hours=env_int("REFRESH_TOKEN_EXPIRES_HOURS", 168)
    )
    app.config["STORE_SHORT_TIMEOUT"] = env_float("STORE_SHORT_TIMEOUT", 5)
    app.config["STORE_LONG_TIMEOUT"] = env_float("STORE_LONG_TIMEOUT", 100)
    app.config["ALLOW_EMPTY_CHECKOUT"] = env_flag("ALLOW_EMPTY_CHECKOUT", True)
    app.config["CORS_ALLOWED_ORIGINS"] = os.getenv("CORS_ALLOWED_ORIGINS", "")
    app.config["TRUSTED_PROXY_HOPS"] = max(0, env_int("TRUSTED_PROXY_HOPS", 1))
    app.config["LOG_LEVEL"] = os.getenv("LOG_LEVEL", "INFO").upper()

    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(app.config["LOG_LEVEL"])

    # Honor proxy headers so logged client addresses are the real ones.
    trusted_proxy_hops = app.config["TRUSTED_PROXY_HOPS"]
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Initialize extensions ---
    allowed_origins = [
        origin.strip()
        for origin in app.config["CORS_ALLOWED_ORIGINS"].split(",")
        if origin.strip()
    ]
    CORS(
        app,
        supports_credentials=True,
        origins=allowed_origins or "*",
        allow_headers=["Content-Type", "Authorization", "token"],
        methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    )

    if database is None:
        mongo = PyMongo(app)
        database = mongo.db
    if database is None:
        raise ConfigurationError("MONGO_URI must include a database name.")

    users = database[app.config["USERS_COLLECTION"]]
    products = database[app.config["PRODUCTS_COLLECTION"]]

    try:
        users.create_index("email", unique=True, sparse=True)
        users.create_index("phone", unique=True, sparse=True)
        users.create_index("user_id")
    except PyMongoError as exc:
        app.logger.warning("Unable to ensure indexes for users: %s", exc)

    short_timeout = app.config["STORE_SHORT_TIMEOUT"]
    long_timeout = app.config["STORE_LONG_TIMEOUT"]

    hasher = PasswordHasher(rounds=app.config["BCRYPT_ROUNDS"])
    tokens = TokenService(
        app.config["SECRET_KEY"],
        users,
        access_ttl=app.config["ACCESS_TOKEN_EXPIRES"],
        refresh_ttl=app.config["REFRESH_TOKEN_EXPIRES"],
        timeout=long_timeout,
        logger=app.logger,
    )
    cart_engine = CartEngine(
        users,
        products,
        short_timeout=short_timeout,
        long_timeout=long_timeout,
        allow_empty_checkout=app.config["ALLOW_EMPTY_CHECKOUT"],
        logger=app.logger,
    )
    address_book = AddressBook(users, timeout=long_timeout, logger=app.logger)
    catalog = ProductCatalog(products, timeout=long_timeout, logger=app.logger)

    app.extensions["shop"] = {
        "database": database,
        "tokens": tokens,
        "cart": cart_engine,
        "addresses": address_book,
        "catalog": catalog,
    }

    email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    # --- Helpers ---

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def is_valid_email(value: Optional[str]) -> bool:
        normalized = normalize_email(value)
        return bool(normalized and email_regex.match(normalized))

    def serialize_user_profile(user_document) -> Dict[str, object]:
        if not user_document:
            return {}
        return serialize_document(
            {
                "user_id": user_document.get("user_id") or str(user_document.get("_id")),
                "first_name": user_document.get("first_name", ""),
                "last_name": user_document.get("last_name", ""),
                "email": user_document.get("email", ""),
                "phone": user_document.get("phone", ""),
                "created_at": user_document.get("created_at"),
                "updated_at": user_document.get("updated_at"),
                "cart": user_document.get("cart") or [],
                "addresses": user_document.get("addresses") or [],
                "orders": user_document.get("orders") or [],
            }
        )

    def validate_signup_payload(payload: Dict) -> Dict[str, str]:
        first_name = str(payload.get("first_name", "")).strip()
        last_name = str(payload.get("last_name", "")).strip()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", ""))
        phone = str(payload.get("phone", "")).strip()

        if not 2 <= len(first_name) <= 30 or not 2 <= len(last_name) <= 30:
            raise InvalidArgument("First and last name must be between 2 and 30 characters.")
        if not is_valid_email(email):
            raise InvalidArgument("A valid email address is required.")
        if len(password) < 6:
            raise InvalidArgument("Password must be at least 6 characters long.")
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise InvalidArgument("Password is too long.")
        if not phone:
            raise InvalidArgument("Phone number is required.")

        return {
            "first_name": first_name,
            "last_name": last_name,
            "email": email,
            "password": password,
            "phone": phone,
        }

    def read_client_token() -> str:
        token = request.headers.get("token", "").strip()
        if token:
            return token
        authorization = request.headers.get("Authorization", "")
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
        raise MissingToken()

    def token_required(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            try:
                g.claims = tokens.validate_token(read_client_token())
            except ShopError as exc:
                app.logger.info(
                    "Rejected request to %s: %s",
                    request.path,
                    exc.message,
                )
                raise
            return view(*args, **kwargs)

        return wrapper

    @app.errorhandler(ShopError)
    def handle_shop_error(error: ShopError):
        return jsonify(error.to_dict()), error.status_code

    # --- ROUTES ---

    # Signup
    @app.route("/users/signup", methods=["POST"])
    def signup():
        payload = request.get_json(silent=True) or {}
        fields = validate_signup_payload(payload)

        try:
            with pymongo.timeout(long_timeout):
                if users.count_documents({"email": fields["email"]}) > 0:
                    raise InvalidArgument("user already exists")
                if users.count_documents({"phone": fields["phone"]}) > 0:
                    raise InvalidArgument("this phone is already in use")

                user_oid = ObjectId()
                user_identifier = str(user_oid)
                token, refresh_token = tokens.issue_tokens(
                    fields["email"],
                    fields["first_name"],
                    fields["last_name"],
                    user_identifier,
                )
                now = utc_now()
                user_document = {
                    "_id": user_oid,
                    "user_id": user_identifier,
                    "first_name": fields["first_name"],
                    "last_name": fields["last_name"],
                    "email": fields["email"],
                    "phone": fields["phone"],
                    "password": hasher.hash(fields["password"]),
                    "token": token,
                    "refresh_token": refresh_token,
                    "created_at": now,
                    "updated_at": now,
                    "cart": [],
                    "addresses": [],
                    "orders": [],
                }
                users.insert_one(user_document)
        except DuplicateKeyError as exc:
            if "phone" in (exc.details or {}).get("keyPattern", {}):
                raise InvalidArgument("this phone is already in use")
            raise InvalidArgument("user already exists")
        except PyMongoError as exc:
            app.logger.error("Unable to create user %s: %s", fields["email"], exc)
            raise PersistenceFailure("user not created")

        app.logger.info("Registered new account %s", user_identifier)
        return (
            jsonify({"message": "user created successfully", "user_id": user_identifier}),
            201,
        )

    # Login
    @app.route("/users/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", ""))

        if not email or not password:
            raise InvalidArgument("Email and password are required.")

        try:
            with pymongo.timeout(long_timeout):
                user = users.find_one({"email": email})
        except PyMongoError as exc:
            app.logger.error("Unable to load account for login: %s", exc)
            raise PersistenceFailure("login failed")

        user = hasher.check(user, password)
        user_identifier = user.get("user_id") or str(user["_id"])
        token, refresh_token = tokens.issue_tokens(
            user.get("email", ""),
            user.get("first_name", ""),
            user.get("last_name", ""),
            user_identifier,
        )
        tokens.persist_tokens(user_identifier, token, refresh_token)

        app.logger.info(
            "Signed in %s from %s",
            user_identifier,
            request.headers.get("X-Forwarded-For", request.remote_addr),
        )
        return jsonify(
            {
                "token": token,
                "refresh_token": refresh_token,
                "InsertedID": user_identifier,
                "user": serialize_user_profile(user),
            }
        )

    # Products
    @app.route("/users/productview", methods=["GET"])
    def list_products():
        return jsonify(serialize_document(catalog.list_products()))

    @app.route("/users/search", methods=["GET"])
    def search_products():
        return jsonify(serialize_document(catalog.search_products(request.args.get("name"))))

    @app.route("/admin/addproduct", methods=["POST"])
    @token_required
    def add_product():
        payload = request.get_json(silent=True) or {}
        product_id = catalog.add_product(payload)
        app.logger.info("Product %s added by %s", product_id, g.claims.uid)
        return (
            jsonify({"message": "Successfully added our Product Admin!!", "product_id": str(product_id)}),
            201,
        )

    # Cart
    @app.route("/addtocart", methods=["GET"])
    @token_required
    def add_to_cart():
        cart_engine.add_to_cart(request.args.get("id"), request.args.get("userID"))
        return jsonify({"message": "product added to cart"})

    @app.route("/removeitem", methods=["GET"])
    @token_required
    def remove_item():
        cart_engine.remove_from_cart(request.args.get("id"), request.args.get("userID"))
        return jsonify({"message": "item removed from cart"})

    @app.route("/listcart", methods=["GET"])
    @token_required
    def list_cart():
        summary = cart_engine.compute_cart_total(request.args.get("id"))
        return jsonify(
            {
                "cart_items": serialize_document(summary.lines),
                "total_price": summary.total,
                "total_items": summary.count,
            }
        )

    @app.route("/cartcheckout", methods=["GET"])
    @token_required
    def cart_checkout():
        order = cart_engine.checkout(request.args.get("id"))
        return jsonify({"message": "items placed the order", "order": serialize_document(order)})

    @app.route("/instantbuy", methods=["GET"])
    @token_required
    def instant_buy():
        order = cart_engine.instant_buy(request.args.get("id"), request.args.get("userID"))
        return jsonify({"message": "product placed the order", "order": serialize_document(order)})

    @app.route("/listorders", methods=["GET"])
    @token_required
    def list_orders():
        orders = cart_engine.list_orders(request.args.get("id"))
        return jsonify({"orders": serialize_document(orders)})

    # Addresses
    @app.route("/addaddress", methods=["POST"])
    @token_required
    def add_address():
        payload = request.get_json(silent=True) or {}
        address = address_book.add_address(request.args.get("id"), payload)
        return (
            jsonify({"message": "address added", "address": serialize_document(address)}),
            201,
        )

    @app.route("/edithomeaddress", methods=["PUT"])
    @token_required
    def edit_home_address():
        payload = request.get_json(silent=True) or {}
        address_book.edit_home_address(request.args.get("id"), payload)
        return jsonify({"message": "successfully updated"})

    @app.route("/editworkaddress", methods=["PUT"])
    @token_required
    def edit_work_address():
        payload = request.get_json(silent=True) or {}
        address_book.edit_work_address(request.args.get("id"), payload)
        return jsonify({"message": "successfully updated"})

    @app.route("/deleteaddresses", methods=["GET"])
    @token_required
    def delete_addresses():
        address_book.delete_addresses(request.args.get("id"))
        return jsonify({"message": "Successfully Deleted"})

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    # --- CLI ---

    @app.cli.command("seed-products")
    def seed_products_command():
        """Load the demo catalog into an empty products collection."""
        inserted = catalog.seed_products()
        if inserted:
            click.echo(f"Seeded {inserted} products.")
        else:
            click.echo("Products already exist; nothing seeded.")

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8000))
    create_app().run(host="0.0.0.0", port=port)
