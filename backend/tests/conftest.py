"""
Shared pytest fixtures for the backend.

Provides:
- ``settings`` pointing uploads at a temporary directory, rate limits off
- ``db``: an in-memory stand-in for the PyMongo calls the app makes
- ``app`` / ``client`` built with both injected
- access tokens for an admin and a regular customer
"""

import copy
import re
import sys
from dataclasses import replace
from pathlib import Path
from types import SimpleNamespace

import pytest
from bson import ObjectId

# Add backend directory to Python path so `from query_params import ...` works
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from settings import Settings  # noqa: E402


def _matches_operators(value, condition):
    for operator, operand in condition.items():
        if operator == "$options":
            continue
        if operator == "$gte":
            if value is None or value < operand:
                return False
        elif operator == "$lte":
            if value is None or value > operand:
                return False
        elif operator == "$in":
            candidates = value if isinstance(value, list) else [value]
            if not any(candidate in operand for candidate in candidates):
                return False
        elif operator == "$regex":
            flags = re.IGNORECASE if "i" in condition.get("$options", "") else 0
            if not isinstance(value, str) or not re.search(operand, value, flags):
                return False
        else:
            raise NotImplementedError(operator)
    return True


def matches(document, query):
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(matches(document, inner) for inner in condition):
                return False
            continue
        if key == "$and":
            if not all(matches(document, inner) for inner in condition):
                return False
            continue
        value = document.get(key)
        if isinstance(condition, dict) and any(k.startswith("$") for k in condition):
            if not _matches_operators(value, condition):
                return False
        elif isinstance(value, list) and not isinstance(condition, list):
            if condition not in value:
                return False
        elif value != condition:
            return False
    return True


def apply_update(document, update):
    for key, value in update.get("$set", {}).items():
        document[key] = value
    for key, value in update.get("$inc", {}).items():
        document[key] = (document.get(key) or 0) + value
    for key, value in update.get("$push", {}).items():
        document.setdefault(key, []).append(value)


def _sort_key(value):
    return (value is None, value if value is not None else 0)


class FakeCursor:
    def __init__(self, documents):
        self.documents = list(documents)

    def sort(self, key_or_list, direction=None):
        keys = key_or_list
        if not isinstance(key_or_list, list):
            keys = [(key_or_list, direction or 1)]
        for field_name, field_direction in reversed(keys):
            self.documents.sort(
                key=lambda document: _sort_key(document.get(field_name)),
                reverse=field_direction == -1,
            )
        return self

    def skip(self, count):
        self.documents = self.documents[count:]
        return self

    def limit(self, count):
        if count:
            self.documents = self.documents[:count]
        return self

    def __iter__(self):
        return iter(self.documents)


class FakeCollection:
    def __init__(self):
        self.documents = []
        self.find_calls = 0

    def insert_one(self, document):
        document.setdefault("_id", ObjectId())
        self.documents.append(copy.deepcopy(document))
        return SimpleNamespace(inserted_id=document["_id"])

    def find(self, query=None, projection=None):
        self.find_calls += 1
        found = []
        for document in self.documents:
            if not matches(document, query):
                continue
            if projection:
                keys = {"_id"} | {key for key, wanted in projection.items() if wanted}
                document = {key: value for key, value in document.items() if key in keys}
            found.append(copy.deepcopy(document))
        return FakeCursor(found)

    def find_one(self, query=None):
        for document in self.documents:
            if matches(document, query):
                return copy.deepcopy(document)
        return None

    def count_documents(self, query):
        return sum(1 for document in self.documents if matches(document, query))

    def update_one(self, query, update):
        for document in self.documents:
            if matches(document, query):
                apply_update(document, update)
                return SimpleNamespace(matched_count=1)
        return SimpleNamespace(matched_count=0)

    def find_one_and_update(self, query, update, upsert=False, return_document=None):
        for document in self.documents:
            if matches(document, query):
                apply_update(document, update)
                return copy.deepcopy(document)
        if not upsert:
            return None
        document = {key: value for key, value in query.items() if not key.startswith("$")}
        apply_update(document, update)
        self.insert_one(document)
        return copy.deepcopy(document)

    def find_one_and_delete(self, query):
        for index, document in enumerate(self.documents):
            if matches(document, query):
                return self.documents.pop(index)
        return None


class FakeDatabase:
    def __init__(self):
        self.collections = {}

    def __getattr__(self, name):
        if name.startswith("__"):
            raise AttributeError(name)
        return self.collections.setdefault(name, FakeCollection())


@pytest.fixture
def settings(tmp_path):
    upload_folder = tmp_path / "uploads"
    return replace(
        Settings(),
        upload_folder=str(upload_folder),
        temp_upload_folder=str(upload_folder / "tmp"),
        trusted_proxy_hops=0,
        rate_limit_enabled=False,
        jwt_secret_key="test-secret-key-with-enough-length-for-hs256",
    )


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def admin_user(db):
    user = {"_id": ObjectId(), "email": "admin@limeshop.store", "name": "Admin", "role": "admin"}
    db.users.insert_one(user)
    return user


@pytest.fixture
def customer_user(db):
    user = {
        "_id": ObjectId(),
        "email": "buyer@example.com",
        "name": "Buyer",
        "role": "customer",
        "orders": [],
        "totalAmount": 0,
        "orderCount": 0,
    }
    db.users.insert_one(user)
    return user


@pytest.fixture
def app(settings, db):
    from app import create_app

    app = create_app(settings=settings, database=db)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_header(app):
    from flask_jwt_extended import create_access_token

    def build(user):
        with app.app_context():
            token = create_access_token(identity=user["email"])
        return {"Authorization": f"Bearer {token}"}

    return build
