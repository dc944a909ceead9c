import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import secrets
from datetime import timedelta
from itertools import count

import pytest
from werkzeug.security import generate_password_hash

from bookhub import Book, EBook, Session, StudentBook, User, create_app, db, utcnow


PASSWORD = "reader-pass"
PASSWORD_HASH = generate_password_hash(PASSWORD)


def razorpay_orders_create(data=None, **kwargs):
    return {
        "id": f"order_{secrets.token_hex(7)}",
        "entity": "order",
        "amount": data["amount"],
        "amount_paid": 0,
        "amount_due": data["amount"],
        "currency": data["currency"],
        "receipt": data["receipt"],
        "notes": data["notes"],
        "status": "created",
    }


@pytest.fixture()
def app(tmp_path, monkeypatch):
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'bookhub-test.db'}",
        "SESSION_COOKIE_SECURE": False,
        "SECRET_KEY": "test-secret",
        "RAZORPAY_KEY_ID": "rzp_test_bookhub",
        "RAZORPAY_KEY_SECRET": "bookhub-test-secret",
    })
    # Razorpay order creation is an HTTP call; signature checks stay in the SDK.
    monkeypatch.setattr(app.extensions["payment_gateway"].client.order, "create", razorpay_orders_create)
    with app.app_context():
        yield app
        db.session.remove()
        db.engine.dispose()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def reload(app):
    def _reload(model, row_id):
        db.session.expire_all()
        return db.session.get(model, row_id)

    return _reload


@pytest.fixture()
def make_user(app):
    numbers = count(1)

    def _make(role="user", class_level=None, name=None):
        n = next(numbers)
        user = User(
            name=name or f"Reader {n}",
            email=f"reader{n}@example.com",
            password_hash=PASSWORD_HASH,
            role=role,
            class_level=class_level,
        )
        db.session.add(user)
        db.session.commit()
        token = secrets.token_urlsafe(32)
        db.session.add(Session(user_id=user.id, session_token=token, expires_at=utcnow() + timedelta(hours=1)))
        db.session.commit()
        user.headers = {"Authorization": f"Bearer {token}"}
        return user

    return _make


@pytest.fixture()
def make_book(app):
    def _make(**overrides):
        values = {
            "title": "The Quiet River",
            "author": "Asha Menon",
            "description": "A family saga along the Kaveri.",
            "category": "Fiction",
            "price": 250.0,
            "stock": 10,
        }
        values.update(overrides)
        book = Book(**values)
        db.session.add(book)
        db.session.commit()
        return book

    return _make


@pytest.fixture()
def make_student_book(app):
    def _make(**overrides):
        values = {
            "title": "Numbers Everywhere",
            "author": "R. Iyer",
            "description": "Workbook for everyday arithmetic.",
            "class_level": "Class 5",
            "subject": "Mathematics",
            "price": 120.0,
            "stock": 20,
        }
        values.update(overrides)
        book = StudentBook(**values)
        db.session.add(book)
        db.session.commit()
        return book

    return _make


@pytest.fixture()
def make_ebook(app):
    def _make(**overrides):
        values = {
            "title": "The Quiet River (digital)",
            "author": "Asha Menon",
            "description": "Digital edition.",
            "file_url": "https://files.example.com/ebooks/quiet-river.pdf",
            "unlock_method": "purchase",
        }
        values.update(overrides)
        ebook = EBook(**values)
        db.session.add(ebook)
        db.session.commit()
        return ebook

    return _make
