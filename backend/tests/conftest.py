"""
Shared fixtures for the storefront backend tests.

The database is an in-memory mongomock client so every test starts from an
empty Users/Products pair. Password hashing runs with the minimum bcrypt cost
to keep the suite fast.
"""
import mongomock
import pytest
from bson import ObjectId

from app import create_app
from cart import CartEngine
from credentials import PasswordHasher, TokenService
from documents import utc_now

TEST_SECRET = "test-secret-key-used-only-by-the-suite-0123456789abcdef0123456789"


@pytest.fixture
def database():
    return mongomock.MongoClient().db


@pytest.fixture
def users(database):
    return database["Users"]


@pytest.fixture
def products(database):
    return database["Products"]


@pytest.fixture
def app(database):
    return create_app(
        {
            "TESTING": True,
            "SECRET_KEY": TEST_SECRET,
            "BCRYPT_ROUNDS": 4,
            "TRUSTED_PROXY_HOPS": 0,
        },
        database=database,
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def hasher():
    return PasswordHasher(rounds=4)


@pytest.fixture
def token_service(users):
    return TokenService(TEST_SECRET, users)


@pytest.fixture
def cart_engine(users, products):
    return CartEngine(users, products)


@pytest.fixture
def make_product(products):
    def factory(name="Test Product", price=500, rating=5, image="test.jpg"):
        document = {
            "_id": ObjectId(),
            "product_name": name,
            "price": price,
            "rating": rating,
            "image": image,
        }
        products.insert_one(document)
        return document

    return factory


@pytest.fixture
def make_user(users, hasher):
    def factory(email="jane@example.com", phone="+15550001", password="secret123", cart=None):
        user_oid = ObjectId()
        document = {
            "_id": user_oid,
            "user_id": str(user_oid),
            "first_name": "Jane",
            "last_name": "Doe",
            "email": email,
            "phone": phone,
            "password": hasher.hash(password),
            "created_at": utc_now(),
            "updated_at": utc_now(),
            "cart": list(cart or []),
            "addresses": [],
            "orders": [],
        }
        users.insert_one(document)
        return document

    return factory


@pytest.fixture
def auth_headers(token_service):
    def factory(user):
        token, _ = token_service.issue_tokens(
            user["email"], user["first_name"], user["last_name"], user["user_id"]
        )
        return {"token": token}

    return factory
