import json
import math
import os
import secrets
import time
from collections import namedtuple
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from functools import wraps

import click
import razorpay
from flask import Flask, abort, jsonify, make_response, request
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import func, or_, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash


db = SQLAlchemy()


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def iso(value):
    return value.isoformat() if value else None


BOOK_CATEGORIES = [
    "Fiction", "Non-Fiction", "Science", "History", "Biography", "Self-Help", "Children", "Educational",
    "Comics", "Poetry", "Drama", "Mystery", "Romance", "Fantasy", "Horror", "Thriller",
]
LISTING_CATEGORIES = BOOK_CATEGORIES + ["Textbook", "Academic"]
FORUM_GENRES = BOOK_CATEGORIES + ["General"]
LANGUAGES = ["English", "Hindi", "Tamil", "Telugu", "Malayalam", "Kannada", "Bengali", "Marathi", "Gujarati", "Punjabi"]
CLASS_LEVELS = [
    "Pre-KG", "LKG", "UKG", "Class 1", "Class 2", "Class 3", "Class 4", "Class 5", "Class 6",
    "Class 7", "Class 8", "Class 9", "Class 10", "Class 11", "Class 12",
]
SUBJECTS = [
    "English", "Mathematics", "Science", "Social Studies", "Hindi", "Tamil", "Telugu", "Malayalam", "Kannada",
    "Bengali", "Marathi", "Gujarati", "Punjabi", "Art", "Music", "Physical Education", "Computer Science",
    "General Knowledge", "Story Books", "Activity Books",
]
BOOK_TYPES = ["Physical", "E-Book", "Both"]
EBOOK_FILE_TYPES = ["PDF", "EPUB", "MOBI"]
UNLOCK_METHODS = ["purchase", "class", "free"]
PAYMENT_METHODS = ["Razorpay", "Cash on Delivery", "Card"]
ORDER_STATUSES = ["Pending", "Processing", "Shipped", "Delivered", "Cancelled"]
LISTING_CONDITIONS = ["New", "Like New", "Good", "Fair", "Poor"]
LISTING_STATUSES = ["active", "sold", "removed"]
READING_CLUBS = ["Fiction Club", "Science Club", "History Club", "Children Club", "Poetry Club", "General Discussion"]
SEARCH_TYPES = ["books", "student-books", "all"]


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default="user")
    class_level = db.Column(db.String(20), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Session(db.Model):
    __tablename__ = "sessions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    session_token = db.Column(db.String(255), unique=True, nullable=False, index=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    device_info = db.Column(db.String(512), nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    last_activity_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class Book(db.Model):
    __tablename__ = "books"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False, index=True)
    author = db.Column(db.String(255), nullable=False, index=True)
    description = db.Column(db.Text, nullable=False, default="")
    isbn = db.Column(db.String(32), unique=True, nullable=True)
    category = db.Column(db.String(40), nullable=False, index=True)
    language = db.Column(db.String(40), nullable=False, default="English")
    price = db.Column(db.Float, nullable=False)
    original_price = db.Column(db.Float, nullable=True)
    discount = db.Column(db.Integer, nullable=False, default=0)
    stock = db.Column(db.Integer, nullable=False, default=0)
    cover_image = db.Column(db.String(500), nullable=False, default="")
    images = db.Column(db.JSON, nullable=False, default=list)
    publisher = db.Column(db.String(255), nullable=False, default="")
    pages = db.Column(db.Integer, nullable=True)
    rating_average = db.Column(db.Float, nullable=False, default=0)
    rating_count = db.Column(db.Integer, nullable=False, default=0)
    tags = db.Column(db.JSON, nullable=False, default=list)
    featured = db.Column(db.Boolean, nullable=False, default=False)
    trending = db.Column(db.Boolean, nullable=False, default=False)
    recently_added = db.Column(db.Boolean, nullable=False, default=False)
    book_type = db.Column(db.String(20), nullable=False, default="Physical")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class StudentBook(db.Model):
    __tablename__ = "student_books"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False, index=True)
    author = db.Column(db.String(255), nullable=False, index=True)
    description = db.Column(db.Text, nullable=False, default="")
    isbn = db.Column(db.String(32), unique=True, nullable=True)
    class_level = db.Column(db.String(20), nullable=False, index=True)
    subject = db.Column(db.String(40), nullable=True, index=True)
    language = db.Column(db.String(40), nullable=False, default="English")
    price = db.Column(db.Float, nullable=False)
    original_price = db.Column(db.Float, nullable=True)
    discount = db.Column(db.Integer, nullable=False, default=0)
    stock = db.Column(db.Integer, nullable=False, default=0)
    cover_image = db.Column(db.String(500), nullable=False, default="")
    images = db.Column(db.JSON, nullable=False, default=list)
    publisher = db.Column(db.String(255), nullable=False, default="")
    pages = db.Column(db.Integer, nullable=True)
    rating_average = db.Column(db.Float, nullable=False, default=0)
    rating_count = db.Column(db.Integer, nullable=False, default=0)
    is_pre_kg = db.Column(db.Boolean, nullable=False, default=False)
    age_group = db.Column(db.String(10), nullable=True)
    tags = db.Column(db.JSON, nullable=False, default=list)
    featured = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class SchoolClass(db.Model):
    __tablename__ = "classes"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(20), unique=True, nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    age_group = db.Column(db.String(20), nullable=False, default="")
    subjects = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class EBook(db.Model):
    __tablename__ = "ebooks"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False, index=True)
    author = db.Column(db.String(255), nullable=False, index=True)
    description = db.Column(db.Text, nullable=False, default="")
    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=True, index=True)
    student_book_id = db.Column(db.Integer, db.ForeignKey("student_books.id"), nullable=True, index=True)
    file_url = db.Column(db.String(500), nullable=False)
    file_type = db.Column(db.String(10), nullable=False, default="PDF")
    file_size = db.Column(db.BigInteger, nullable=False, default=0)
    cover_image = db.Column(db.String(500), nullable=False, default="")
    pages = db.Column(db.Integer, nullable=False, default=0)
    isbn = db.Column(db.String(32), unique=True, nullable=True)
    category = db.Column(db.String(40), nullable=True)
    class_level = db.Column(db.String(20), nullable=True, index=True)
    unlock_method = db.Column(db.String(20), nullable=False, default="purchase")
    price = db.Column(db.Float, nullable=False, default=0)
    is_free = db.Column(db.Boolean, nullable=False, default=False)
    rating_average = db.Column(db.Float, nullable=False, default=0)
    rating_count = db.Column(db.Integer, nullable=False, default=0)
    download_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class EBookAccess(db.Model):
    __tablename__ = "ebook_accesses"
    __table_args__ = (db.UniqueConstraint("user_id", "ebook_id", name="uq_ebook_access_user_ebook"),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    ebook_id = db.Column(db.Integer, db.ForeignKey("ebooks.id"), nullable=False, index=True)
    access_method = db.Column(db.String(20), nullable=False)
    unlocked_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_accessed = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    download_count = db.Column(db.Integer, nullable=False, default=0)


class Cart(db.Model):
    __tablename__ = "carts"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), unique=True, nullable=False)
    total_price = db.Column(db.Float, nullable=False, default=0)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    items = db.relationship("CartItem", order_by="CartItem.id", cascade="all, delete-orphan")


class CartItem(db.Model):
    __tablename__ = "cart_items"

    id = db.Column(db.Integer, primary_key=True)
    cart_id = db.Column(db.Integer, db.ForeignKey("carts.id"), nullable=False, index=True)
    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=True)
    student_book_id = db.Column(db.Integer, db.ForeignKey("student_books.id"), nullable=True)
    name = db.Column(db.String(255), nullable=False, default="")
    image = db.Column(db.String(500), nullable=False, default="")
    price = db.Column(db.Float, nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    shipping_address = db.Column(db.JSON, nullable=False, default=dict)
    payment_method = db.Column(db.String(40), nullable=False)
    payment_session_id = db.Column(db.String(64), nullable=True)
    provider_order_id = db.Column(db.String(64), nullable=True)
    provider_payment_id = db.Column(db.String(64), nullable=True)
    provider_signature = db.Column(db.String(128), nullable=True)
    payment_status = db.Column(db.String(20), nullable=True)
    items_price = db.Column(db.Float, nullable=False, default=0)
    shipping_price = db.Column(db.Float, nullable=False, default=0)
    tax_price = db.Column(db.Float, nullable=False, default=0)
    total_price = db.Column(db.Float, nullable=False, default=0)
    is_paid = db.Column(db.Boolean, nullable=False, default=False)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_delivered = db.Column(db.Boolean, nullable=False, default=False)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="Pending")
    tracking_number = db.Column(db.String(120), nullable=False, default="")
    invoice_number = db.Column(db.String(64), unique=True, nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    items = db.relationship("OrderItem", order_by="OrderItem.id", cascade="all, delete-orphan")


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=True, index=True)
    student_book_id = db.Column(db.Integer, db.ForeignKey("student_books.id"), nullable=True, index=True)
    name = db.Column(db.String(255), nullable=False, default="")
    image = db.Column(db.String(500), nullable=False, default="")
    price = db.Column(db.Float, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)


class Review(db.Model):
    __tablename__ = "reviews"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=True, index=True)
    student_book_id = db.Column(db.Integer, db.ForeignKey("student_books.id"), nullable=True, index=True)
    rating = db.Column(db.Integer, nullable=False)
    comment = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Favourite(db.Model):
    __tablename__ = "favourites"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=True, index=True)
    student_book_id = db.Column(db.Integer, db.ForeignKey("student_books.id"), nullable=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class ExchangeListing(db.Model):
    __tablename__ = "exchange_listings"

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    author = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    condition = db.Column(db.String(20), nullable=False)
    price = db.Column(db.Float, nullable=False)
    original_price = db.Column(db.Float, nullable=True)
    images = db.Column(db.JSON, nullable=False, default=list)
    category = db.Column(db.String(40), nullable=True)
    class_level = db.Column(db.String(20), nullable=True)
    isbn = db.Column(db.String(32), nullable=False, default="")
    location = db.Column(db.JSON, nullable=False, default=dict)
    status = db.Column(db.String(20), nullable=False, default="active", index=True)
    views = db.Column(db.Integer, nullable=False, default=0)
    sold_to_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    sold_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class ExchangeInterest(db.Model):
    __tablename__ = "exchange_interests"
    __table_args__ = (db.UniqueConstraint("listing_id", "user_id", name="uq_exchange_interest_listing_user"),)

    id = db.Column(db.Integer, primary_key=True)
    listing_id = db.Column(db.Integer, db.ForeignKey("exchange_listings.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class ExchangeMessage(db.Model):
    __tablename__ = "exchange_messages"

    id = db.Column(db.Integer, primary_key=True)
    listing_id = db.Column(db.Integer, db.ForeignKey("exchange_listings.id"), nullable=False, index=True)
    sender_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    receiver_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    message = db.Column(db.Text, nullable=False)
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class ForumPost(db.Model):
    __tablename__ = "forum_posts"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    content = db.Column(db.Text, nullable=False)
    genre = db.Column(db.String(40), nullable=False, index=True)
    reading_club = db.Column(db.String(40), nullable=False, default="General Discussion", index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class ForumPostVote(db.Model):
    __tablename__ = "forum_post_votes"
    __table_args__ = (db.UniqueConstraint("post_id", "user_id", name="uq_forum_post_vote_post_user"),)

    id = db.Column(db.Integer, primary_key=True)
    post_id = db.Column(db.Integer, db.ForeignKey("forum_posts.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    value = db.Column(db.Integer, nullable=False)


class ForumComment(db.Model):
    __tablename__ = "forum_comments"

    id = db.Column(db.Integer, primary_key=True)
    post_id = db.Column(db.Integer, db.ForeignKey("forum_posts.id"), nullable=False, index=True)
    parent_id = db.Column(db.Integer, db.ForeignKey("forum_comments.id"), nullable=True, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class ForumCommentVote(db.Model):
    __tablename__ = "forum_comment_votes"
    __table_args__ = (db.UniqueConstraint("comment_id", "user_id", name="uq_forum_comment_vote_comment_user"),)

    id = db.Column(db.Integer, primary_key=True)
    comment_id = db.Column(db.Integer, db.ForeignKey("forum_comments.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)


class SearchHistory(db.Model):
    __tablename__ = "search_history"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    query_text = db.Column("query", db.String(255), nullable=False, index=True)
    results_count = db.Column(db.Integer, nullable=False, default=0)
    search_type = db.Column(db.String(20), nullable=False, default="all")
    ip_address = db.Column(db.String(64), nullable=False, default="")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    admin_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    action = db.Column(db.String(255), nullable=False)
    ip_address = db.Column(db.String(64), nullable=True)
    device_info = db.Column(db.String(512), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class ErrorLog(db.Model):
    __tablename__ = "error_logs"

    id = db.Column(db.Integer, primary_key=True)
    source = db.Column(db.String(120), nullable=False, default="system")
    severity = db.Column(db.String(20), nullable=False, default="error")
    message = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


def money(value):
    return float(Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def compute_order_pricing(items_price, free_shipping_threshold=500, shipping_flat_rate=50, tax_rate=0.18):
    items = Decimal(str(items_price))
    if items > Decimal(str(free_shipping_threshold)):
        shipping = Decimal("0")
    else:
        shipping = Decimal(str(shipping_flat_rate))
    tax = items * Decimal(str(tax_rate))
    return {
        "items_price": money(items),
        "shipping_price": money(shipping),
        "tax_price": money(tax),
        "total_price": money(items + shipping + tax),
    }


def generate_invoice_number():
    return f"INV-{int(time.time() * 1000)}-{secrets.token_hex(5).upper()}"


def user_summary(user):
    if user is None:
        return None
    return {"id": user.id, "name": user.name, "email": user.email}


def user_to_dict(user):
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "studentProfile": {"class": user.class_level} if user.class_level else None,
        "createdAt": iso(user.created_at),
    }


def book_to_dict(book):
    return {
        "id": book.id,
        "title": book.title,
        "author": book.author,
        "description": book.description,
        "isbn": book.isbn,
        "category": book.category,
        "language": book.language,
        "price": book.price,
        "originalPrice": book.original_price,
        "discount": book.discount,
        "stock": book.stock,
        "coverImage": book.cover_image,
        "images": book.images or [],
        "publisher": book.publisher,
        "pages": book.pages,
        "rating": {"average": book.rating_average, "count": book.rating_count},
        "tags": book.tags or [],
        "featured": book.featured,
        "trending": book.trending,
        "recentlyAdded": book.recently_added,
        "bookType": book.book_type,
        "createdAt": iso(book.created_at),
        "updatedAt": iso(book.updated_at),
    }


def student_book_to_dict(book):
    return {
        "id": book.id,
        "title": book.title,
        "author": book.author,
        "description": book.description,
        "isbn": book.isbn,
        "class": book.class_level,
        "subject": book.subject,
        "language": book.language,
        "price": book.price,
        "originalPrice": book.original_price,
        "discount": book.discount,
        "stock": book.stock,
        "coverImage": book.cover_image,
        "images": book.images or [],
        "publisher": book.publisher,
        "pages": book.pages,
        "rating": {"average": book.rating_average, "count": book.rating_count},
        "isPreKG": book.is_pre_kg,
        "ageGroup": book.age_group,
        "tags": book.tags or [],
        "featured": book.featured,
        "createdAt": iso(book.created_at),
        "updatedAt": iso(book.updated_at),
    }


def class_to_dict(school_class):
    return {
        "id": school_class.id,
        "name": school_class.name,
        "description": school_class.description,
        "ageGroup": school_class.age_group,
        "subjects": school_class.subjects or [],
    }


def catalog_ref(book_id, student_book_id):
    """Compact reference to whichever catalog item a line, review or favourite points at."""
    if book_id:
        book = db.session.get(Book, book_id)
        if book:
            return {"kind": "book", "id": book.id, "title": book.title, "author": book.author,
                    "price": book.price, "coverImage": book.cover_image}
        return {"kind": "book", "id": book_id}
    if student_book_id:
        book = db.session.get(StudentBook, student_book_id)
        if book:
            return {"kind": "studentBook", "id": book.id, "title": book.title, "author": book.author,
                    "price": book.price, "coverImage": book.cover_image, "class": book.class_level}
        return {"kind": "studentBook", "id": student_book_id}
    return None


def ebook_to_dict(ebook, include_file=False):
    data = {
        "id": ebook.id,
        "title": ebook.title,
        "author": ebook.author,
        "description": ebook.description,
        "book": ebook.book_id,
        "studentBook": ebook.student_book_id,
        "fileType": ebook.file_type,
        "fileSize": ebook.file_size,
        "coverImage": ebook.cover_image,
        "pages": ebook.pages,
        "isbn": ebook.isbn,
        "category": ebook.category,
        "class": ebook.class_level,
        "unlockMethod": ebook.unlock_method,
        "price": ebook.price,
        "isFree": ebook.is_free,
        "rating": {"average": ebook.rating_average, "count": ebook.rating_count},
        "downloadCount": ebook.download_count,
        "createdAt": iso(ebook.created_at),
    }
    if include_file:
        data["fileUrl"] = ebook.file_url
    return data


def access_to_dict(access):
    return {
        "id": access.id,
        "user": access.user_id,
        "ebook": access.ebook_id,
        "accessMethod": access.access_method,
        "unlockedAt": iso(access.unlocked_at),
        "lastAccessed": iso(access.last_accessed),
        "downloadCount": access.download_count,
    }


def line_to_dict(line):
    return {
        "id": line.id,
        "book": line.book_id,
        "studentBook": line.student_book_id,
        "item": catalog_ref(line.book_id, line.student_book_id),
        "name": line.name,
        "image": line.image,
        "price": line.price,
        "quantity": line.quantity,
    }


def cart_to_dict(cart):
    if cart is None:
        return {"items": [], "totalPrice": 0}
    return {
        "id": cart.id,
        "user": cart.user_id,
        "items": [line_to_dict(line) for line in cart.items],
        "totalPrice": cart.total_price,
        "updatedAt": iso(cart.updated_at),
    }


def order_to_dict(order, include_user=False):
    data = {
        "id": order.id,
        "user": order.user_id,
        "orderItems": [line_to_dict(item) for item in order.items],
        "shippingAddress": order.shipping_address or {},
        "paymentMethod": order.payment_method,
        "paymentSessionId": order.payment_session_id,
        "paymentResult": {
            "providerOrderId": order.provider_order_id,
            "paymentId": order.provider_payment_id,
            "status": order.payment_status,
        },
        "itemsPrice": order.items_price,
        "shippingPrice": order.shipping_price,
        "taxPrice": order.tax_price,
        "totalPrice": order.total_price,
        "isPaid": order.is_paid,
        "paidAt": iso(order.paid_at),
        "isDelivered": order.is_delivered,
        "deliveredAt": iso(order.delivered_at),
        "status": order.status,
        "trackingNumber": order.tracking_number,
        "invoiceNumber": order.invoice_number,
        "createdAt": iso(order.created_at),
    }
    if include_user:
        data["user"] = user_summary(db.session.get(User, order.user_id))
    return data


def review_to_dict(review):
    author = db.session.get(User, review.user_id)
    return {
        "id": review.id,
        "user": {"id": review.user_id, "name": author.name if author else None},
        "book": review.book_id,
        "studentBook": review.student_book_id,
        "rating": review.rating,
        "comment": review.comment,
        "createdAt": iso(review.created_at),
        "updatedAt": iso(review.updated_at),
    }


def favourite_to_dict(favourite):
    return {
        "id": favourite.id,
        "book": favourite.book_id,
        "studentBook": favourite.student_book_id,
        "item": catalog_ref(favourite.book_id, favourite.student_book_id),
        "createdAt": iso(favourite.created_at),
    }


def listing_to_dict(listing):
    interested = [
        row.user_id
        for row in ExchangeInterest.query.filter_by(listing_id=listing.id).order_by(ExchangeInterest.id).all()
    ]
    return {
        "id": listing.id,
        "seller": user_summary(db.session.get(User, listing.seller_id)),
        "title": listing.title,
        "author": listing.author,
        "description": listing.description,
        "condition": listing.condition,
        "price": listing.price,
        "originalPrice": listing.original_price,
        "images": listing.images or [],
        "category": listing.category,
        "class": listing.class_level,
        "isbn": listing.isbn,
        "location": listing.location or {},
        "status": listing.status,
        "views": listing.views,
        "interestedUsers": interested,
        "soldTo": listing.sold_to_id,
        "soldAt": iso(listing.sold_at),
        "createdAt": iso(listing.created_at),
        "updatedAt": iso(listing.updated_at),
    }


def message_to_dict(message):
    return {
        "id": message.id,
        "listing": message.listing_id,
        "sender": user_summary(db.session.get(User, message.sender_id)),
        "receiver": user_summary(db.session.get(User, message.receiver_id)),
        "message": message.message,
        "isRead": message.is_read,
        "readAt": iso(message.read_at),
        "createdAt": iso(message.created_at),
    }


def comment_to_dict(comment, replies=None):
    upvotes = [vote.user_id for vote in ForumCommentVote.query.filter_by(comment_id=comment.id).all()]
    data = {
        "id": comment.id,
        "user": user_summary(db.session.get(User, comment.user_id)),
        "content": comment.content,
        "upvotes": upvotes,
        "createdAt": iso(comment.created_at),
    }
    if replies is not None:
        data["replies"] = replies
    return data


def post_to_dict(post, include_comments=True):
    votes = ForumPostVote.query.filter_by(post_id=post.id).order_by(ForumPostVote.id).all()
    data = {
        "id": post.id,
        "user": user_summary(db.session.get(User, post.user_id)),
        "title": post.title,
        "content": post.content,
        "genre": post.genre,
        "readingClub": post.reading_club,
        "upvotes": [vote.user_id for vote in votes if vote.value > 0],
        "downvotes": [vote.user_id for vote in votes if vote.value < 0],
        "commentCount": ForumComment.query.filter_by(post_id=post.id).count(),
        "createdAt": iso(post.created_at),
        "updatedAt": iso(post.updated_at),
    }
    if include_comments:
        comments = ForumComment.query.filter_by(post_id=post.id).order_by(ForumComment.id).all()
        replies = {}
        for comment in comments:
            if comment.parent_id:
                replies.setdefault(comment.parent_id, []).append(comment_to_dict(comment))
        data["comments"] = [
            comment_to_dict(comment, replies.get(comment.id, []))
            for comment in comments
            if comment.parent_id is None
        ]
    return data


AccessDecision = namedtuple("AccessDecision", ["has_access", "access_method", "reason"])

ACCESS_DENIED_MESSAGES = {
    "class_mismatch": "This e-book is only available for students in the specified class",
    "purchase_required": "You need to purchase the physical book to unlock this e-book",
    "no_unlock_policy": "You do not have access to this e-book",
}


def has_paid_purchase(user_id, ebook):
    refs = []
    if ebook.book_id:
        refs.append(OrderItem.book_id == ebook.book_id)
    if ebook.student_book_id:
        refs.append(OrderItem.student_book_id == ebook.student_book_id)
    if not refs:
        return False
    match = (
        db.session.query(OrderItem.id)
        .join(Order, OrderItem.order_id == Order.id)
        .filter(Order.user_id == user_id, Order.is_paid.is_(True), or_(*refs))
        .first()
    )
    return match is not None


def resolve_ebook_access(user, ebook):
    """Decide whether ``user`` may read ``ebook``.

    An existing grant always wins and keeps the method it was unlocked with.
    Otherwise free e-books open for everyone, class e-books open for students
    whose class matches, and purchase e-books open once a paid order contains
    the linked catalog item.
    """
    existing = EBookAccess.query.filter_by(user_id=user.id, ebook_id=ebook.id).first()
    if existing:
        return AccessDecision(True, existing.access_method, None)

    if ebook.is_free or ebook.unlock_method == "free":
        return AccessDecision(True, "free", None)

    if ebook.unlock_method == "class":
        if user.role == "student" and user.class_level and user.class_level == ebook.class_level:
            return AccessDecision(True, "class", None)
        return AccessDecision(False, None, "class_mismatch")

    if ebook.unlock_method == "purchase":
        if has_paid_purchase(user.id, ebook):
            return AccessDecision(True, "purchase", None)
        return AccessDecision(False, None, "purchase_required")

    return AccessDecision(False, None, "no_unlock_policy")


def grant_ebook_access(user, ebook, access_method):
    now = utcnow()
    access = EBookAccess.query.filter_by(user_id=user.id, ebook_id=ebook.id).first()
    if access:
        access.last_accessed = now
    else:
        access = EBookAccess(
            user_id=user.id,
            ebook_id=ebook.id,
            access_method=access_method,
            unlocked_at=now,
            last_accessed=now,
        )
        db.session.add(access)
    EBook.query.filter_by(id=ebook.id).update(
        {EBook.download_count: EBook.download_count + 1}, synchronize_session=False
    )
    return access


def recalculate_rating(book_id=None, student_book_id=None):
    if book_id:
        target = db.session.get(Book, book_id)
        reviews = Review.query.filter_by(book_id=book_id)
    elif student_book_id:
        target = db.session.get(StudentBook, student_book_id)
        reviews = Review.query.filter_by(student_book_id=student_book_id)
    else:
        return None
    if target is None:
        return None

    ratings = [review.rating for review in reviews.all()]
    target.rating_average = sum(ratings) / len(ratings) if ratings else 0
    target.rating_count = len(ratings)
    return target


def add_to_cart(cart, book=None, student_book=None, quantity=1):
    """Merge ``quantity`` of a catalog item into ``cart`` and refresh the total.

    Works only through the cart's own session so callers can drive it from any
    session bound to the engine.
    """
    item = book or student_book
    line = None
    for existing in cart.items:
        if book is not None and existing.book_id == book.id:
            line = existing
            break
        if student_book is not None and existing.student_book_id == student_book.id:
            line = existing
            break

    if line:
        line.quantity += quantity
    else:
        line = CartItem(
            book_id=book.id if book is not None else None,
            student_book_id=student_book.id if student_book is not None else None,
            name=item.title,
            image=item.cover_image or "",
            price=item.price,
            quantity=quantity,
        )
        cart.items.append(line)
    recalculate_cart_total(cart)
    return line


def recalculate_cart_total(cart):
    total = sum((Decimal(str(line.price)) * line.quantity for line in cart.items), Decimal("0"))
    cart.total_price = money(total)
    cart.updated_at = utcnow()


def clear_cart(cart):
    cart.items.clear()
    cart.total_price = 0
    cart.updated_at = utcnow()


def build_order_from_cart(cart, user_id, shipping_address, payment_method, **pricing_rules):
    pricing = compute_order_pricing(cart.total_price, **pricing_rules)
    order = Order(
        user_id=user_id,
        shipping_address=shipping_address or {},
        payment_method=payment_method,
        invoice_number=generate_invoice_number(),
        **pricing,
    )
    for line in cart.items:
        order.items.append(OrderItem(
            book_id=line.book_id,
            student_book_id=line.student_book_id,
            name=line.name,
            image=line.image,
            price=line.price,
            quantity=line.quantity,
        ))
    db.session.add(order)
    return order


def apply_stock_decrement(order):
    # Unconditional decrement; oversold items go negative.
    for item in order.items:
        if item.book_id:
            Book.query.filter_by(id=item.book_id).update(
                {Book.stock: Book.stock - item.quantity}, synchronize_session=False
            )
        elif item.student_book_id:
            StudentBook.query.filter_by(id=item.student_book_id).update(
                {StudentBook.stock: StudentBook.stock - item.quantity}, synchronize_session=False
            )


def _collect_item_signals(book_id, student_book_id, signals):
    if book_id:
        book = db.session.get(Book, book_id)
        if book:
            signals["categories"].add(book.category)
            signals["authors"].add(book.author)
            signals["book_ids"].add(book.id)
    elif student_book_id:
        book = db.session.get(StudentBook, student_book_id)
        if book:
            signals["subjects"].add(book.subject)
            signals["authors"].add(book.author)
            signals["student_book_ids"].add(book.id)


def _similar_items(signals, limit):
    books = []
    clauses = []
    if signals["categories"]:
        clauses.append(Book.category.in_(signals["categories"]))
    if signals["authors"]:
        clauses.append(Book.author.in_(signals["authors"]))
    if clauses:
        query = Book.query.filter(or_(*clauses))
        if signals["book_ids"]:
            query = query.filter(Book.id.notin_(signals["book_ids"]))
        books = [book_to_dict(book) for book in
                 query.order_by(Book.rating_average.desc(), Book.id.asc()).limit(limit).all()]

    student_books = []
    clauses = []
    subjects = {subject for subject in signals["subjects"] if subject}
    if subjects:
        clauses.append(StudentBook.subject.in_(subjects))
    if signals["authors"]:
        clauses.append(StudentBook.author.in_(signals["authors"]))
    if clauses:
        query = StudentBook.query.filter(or_(*clauses))
        if signals["student_book_ids"]:
            query = query.filter(StudentBook.id.notin_(signals["student_book_ids"]))
        student_books = [student_book_to_dict(book) for book in
                         query.order_by(StudentBook.rating_average.desc(), StudentBook.id.asc()).limit(limit).all()]

    return (books + student_books)[:limit]


def _new_signals():
    return {"categories": set(), "authors": set(), "subjects": set(), "book_ids": set(), "student_book_ids": set()}


def build_recommendations(user, limit=10):
    recommendations = {
        "basedOnHistory": [],
        "basedOnWishlist": [],
        "basedOnClass": [],
        "trending": [],
        "popular": [],
    }

    paid_orders = (
        Order.query.filter_by(user_id=user.id, is_paid=True)
        .order_by(Order.created_at.desc())
        .limit(10)
        .all()
    )
    history = _new_signals()
    for order in paid_orders:
        for item in order.items:
            _collect_item_signals(item.book_id, item.student_book_id, history)
    recommendations["basedOnHistory"] = _similar_items(history, limit)

    favourites = Favourite.query.filter_by(user_id=user.id).order_by(Favourite.created_at.desc()).limit(20).all()
    wishlist = _new_signals()
    for favourite in favourites:
        _collect_item_signals(favourite.book_id, favourite.student_book_id, wishlist)
    recommendations["basedOnWishlist"] = _similar_items(wishlist, limit)

    if user.role == "student" and user.class_level:
        class_books = (
            StudentBook.query.filter_by(class_level=user.class_level)
            .order_by(StudentBook.rating_average.desc(), StudentBook.featured.desc(), StudentBook.id.asc())
            .limit(limit)
            .all()
        )
        recommendations["basedOnClass"] = [student_book_to_dict(book) for book in class_books]

    trending = (
        Book.query.filter_by(trending=True)
        .order_by(Book.rating_average.desc(), Book.rating_count.desc(), Book.id.asc())
        .limit(limit)
        .all()
    )
    recommendations["trending"] = [book_to_dict(book) for book in trending]

    popular = (
        Book.query.filter(Book.rating_average >= 4, Book.rating_count >= 10)
        .order_by(Book.rating_average.desc(), Book.rating_count.desc(), Book.id.asc())
        .limit(limit)
        .all()
    )
    recommendations["popular"] = [book_to_dict(book) for book in popular]
    return recommendations


def tiered_search(model, query_text, limit):
    """Exact title matches first, then partial matches, then any-word matches."""
    needle = query_text.strip().lower()
    found = []
    seen = set()

    def take(rows):
        for row in rows:
            if row.id not in seen and len(found) < limit:
                seen.add(row.id)
                found.append(row)

    take(model.query.filter(func.lower(model.title) == needle).order_by(model.id).all())
    if len(found) < limit:
        take(model.query.filter(or_(
            func.lower(model.title).contains(needle),
            func.lower(model.author).contains(needle),
            func.lower(model.description).contains(needle),
        )).order_by(model.rating_average.desc(), model.id).all())
    words = [word for word in needle.split() if len(word) > 2]
    if len(found) < limit and words:
        clauses = []
        for word in words:
            clauses.append(func.lower(model.title).contains(word))
            clauses.append(func.lower(model.author).contains(word))
        take(model.query.filter(or_(*clauses)).order_by(model.rating_average.desc(), model.id).all())
    return found


class PaymentGatewayError(Exception):
    pass


class PaymentGateway:
    """Creates Razorpay orders for checkout and verifies payment callbacks."""

    def __init__(self, key_id, key_secret, currency="INR", client=None):
        self.key_id = key_id
        self.key_secret = key_secret
        self.currency = currency
        if client is None and key_id and key_secret:
            client = razorpay.Client(auth=(key_id, key_secret))
        self.client = client

    def create_order(self, amount, receipt, notes=None):
        if self.client is None:
            raise PaymentGatewayError("payment gateway credentials are not configured")
        try:
            session = self.client.order.create(data={
                "amount": int(round(float(amount) * 100)),
                "currency": self.currency,
                "receipt": receipt,
                "notes": notes or {},
            })
        except (razorpay.errors.BadRequestError, razorpay.errors.GatewayError, razorpay.errors.ServerError) as exc:
            raise PaymentGatewayError(str(exc)) from exc
        session = dict(session)
        session["key"] = self.key_id
        return session

    def verify_signature(self, provider_order_id, payment_id, signature):
        if self.client is None or not (provider_order_id and payment_id and signature):
            return False
        try:
            self.client.utility.verify_payment_signature({
                "razorpay_order_id": provider_order_id,
                "razorpay_payment_id": payment_id,
                "razorpay_signature": signature,
            })
        except razorpay.errors.SignatureVerificationError:
            return False
        return True


def ok(status=200, **payload):
    body = {"success": True}
    body.update(payload)
    return jsonify(body), status


def fail(message, status=400, error=None):
    body = {"success": False, "message": message}
    if error is not None:
        body["error"] = error
    return jsonify(body), status


def flag(value):
    return str(value).lower() == "true"


def _as_number(value, cast=float):
    try:
        return cast(value)
    except (TypeError, ValueError):
        return None


CATALOG_TEXT_FIELDS = {
    "title": "title",
    "author": "author",
    "description": "description",
    "isbn": "isbn",
    "coverImage": "cover_image",
    "publisher": "publisher",
    "language": "language",
}


def parse_catalog_payload(data, kind, partial=False):
    required = ["title", "author", "description", "price", "category" if kind == "book" else "class"]
    if not partial:
        missing = [key for key in required if data.get(key) in (None, "")]
        if missing:
            return None, f"Missing required fields: {', '.join(missing)}"

    values = {}
    for key, attr in CATALOG_TEXT_FIELDS.items():
        if key in data:
            values[attr] = (str(data[key]).strip() if data[key] is not None else "") or None
    for attr in ("title", "author", "description"):
        if attr in values and not values[attr]:
            return None, f"{attr} cannot be empty"
    for attr in ("cover_image", "publisher"):
        if attr in values and values[attr] is None:
            values[attr] = ""
    if "language" in values and values["language"] not in LANGUAGES:
        return None, "Invalid language"

    for key, attr in (("price", "price"), ("originalPrice", "original_price")):
        if key in data and data[key] not in (None, ""):
            number = _as_number(data[key])
            if number is None or number < 0:
                return None, f"{key} must be a non-negative number"
            values[attr] = number
    for key, attr, low, high in (("discount", "discount", 0, 100), ("stock", "stock", 0, None), ("pages", "pages", 1, None)):
        if key in data and data[key] not in (None, ""):
            number = _as_number(data[key], int)
            if number is None or number < low or (high is not None and number > high):
                return None, f"Invalid {key}"
            values[attr] = number
    for key in ("images", "tags"):
        if key in data:
            if not isinstance(data[key], list):
                return None, f"{key} must be a list"
            values[key] = [str(entry) for entry in data[key]]

    if kind == "book":
        if "category" in data:
            if data["category"] not in BOOK_CATEGORIES:
                return None, "Invalid category"
            values["category"] = data["category"]
        if "bookType" in data:
            if data["bookType"] not in BOOK_TYPES:
                return None, "Invalid bookType"
            values["book_type"] = data["bookType"]
        for key, attr in (("featured", "featured"), ("trending", "trending"), ("recentlyAdded", "recently_added")):
            if key in data:
                values[attr] = flag(data[key])
    else:
        if "class" in data:
            if data["class"] not in CLASS_LEVELS:
                return None, "Invalid class"
            values["class_level"] = data["class"]
        if "subject" in data:
            if data["subject"] not in SUBJECTS + [None, ""]:
                return None, "Invalid subject"
            values["subject"] = data["subject"] or None
        if "ageGroup" in data:
            values["age_group"] = data["ageGroup"] or None
        for key, attr in (("featured", "featured"), ("isPreKG", "is_pre_kg")):
            if key in data:
                values[attr] = flag(data[key])
    return values, None


def parse_ebook_payload(data, partial=False):
    if not partial:
        missing = [key for key in ("title", "author", "description", "fileUrl") if not data.get(key)]
        if missing:
            return None, f"Missing required fields: {', '.join(missing)}"

    values = {}
    for key, attr in (("title", "title"), ("author", "author"), ("description", "description"),
                      ("fileUrl", "file_url"), ("coverImage", "cover_image"), ("isbn", "isbn"),
                      ("category", "category")):
        if key in data:
            values[attr] = (str(data[key]).strip() if data[key] is not None else "") or None
    for attr in ("title", "author", "description", "file_url"):
        if attr in values and not values[attr]:
            return None, f"{attr} cannot be empty"
    if "cover_image" in values and values["cover_image"] is None:
        values["cover_image"] = ""

    if "fileType" in data:
        if data["fileType"] not in EBOOK_FILE_TYPES:
            return None, "Invalid fileType"
        values["file_type"] = data["fileType"]
    if "unlockMethod" in data:
        if data["unlockMethod"] not in UNLOCK_METHODS:
            return None, "Invalid unlockMethod"
        values["unlock_method"] = data["unlockMethod"]
    if "class" in data:
        if data["class"] not in CLASS_LEVELS + [None, ""]:
            return None, "Invalid class"
        values["class_level"] = data["class"] or None
    if "isFree" in data:
        values["is_free"] = flag(data["isFree"])
    if "price" in data and data["price"] not in (None, ""):
        number = _as_number(data["price"])
        if number is None or number < 0:
            return None, "price must be a non-negative number"
        values["price"] = number
    for key, attr in (("fileSize", "file_size"), ("pages", "pages")):
        if key in data and data[key] not in (None, ""):
            number = _as_number(data[key], int)
            if number is None or number < 0:
                return None, f"Invalid {key}"
            values[attr] = number

    for key, attr, model in (("book", "book_id", Book), ("studentBook", "student_book_id", StudentBook)):
        if key in data:
            linked_id = _as_number(data[key], int) if data[key] else None
            if data[key] and (linked_id is None or db.session.get(model, linked_id) is None):
                return None, f"Linked {key} not found"
            values[attr] = linked_id
    return values, None


def parse_listing_payload(data, partial=False):
    if not partial:
        missing = [key for key in ("title", "author", "description", "condition", "price") if data.get(key) in (None, "")]
        if missing:
            return None, f"Missing required fields: {', '.join(missing)}"

    values = {}
    for key in ("title", "author", "description", "isbn"):
        if key in data:
            values[key] = str(data[key] or "").strip()
    for key in ("title", "author", "description"):
        if key in values and not values[key]:
            return None, f"{key} cannot be empty"
    if "condition" in data:
        if data["condition"] not in LISTING_CONDITIONS:
            return None, "Invalid condition"
        values["condition"] = data["condition"]
    if "category" in data:
        if data["category"] not in LISTING_CATEGORIES + [None, ""]:
            return None, "Invalid category"
        values["category"] = data["category"] or None
    if "class" in data:
        if data["class"] not in CLASS_LEVELS + [None, ""]:
            return None, "Invalid class"
        values["class_level"] = data["class"] or None
    for key, attr in (("price", "price"), ("originalPrice", "original_price")):
        if key in data and data[key] not in (None, ""):
            number = _as_number(data[key])
            if number is None or number < 0:
                return None, f"{key} must be a non-negative number"
            values[attr] = number
    if "images" in data:
        if not isinstance(data["images"], list):
            return None, "images must be a list"
        values["images"] = [str(entry) for entry in data["images"]]
    if "location" in data:
        location = data["location"]
        if isinstance(location, str):
            try:
                location = json.loads(location) if location.strip() else {}
            except ValueError:
                return None, "Invalid location"
        if not isinstance(location, dict):
            return None, "Invalid location"
        values["location"] = {key: location.get(key, "") for key in ("city", "state", "pincode")}
    return values, None


def create_app(test_config=None):
    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv("DATABASE_URL", "sqlite:///bookhub.db")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", secrets.token_hex(32))
    app.config["SESSION_IDLE_MINUTES"] = int(os.getenv("SESSION_IDLE_MINUTES", "30"))
    app.config["SESSION_COOKIE_SECURE"] = os.getenv("SESSION_COOKIE_SECURE", "true").lower() == "true"
    app.config["FREE_SHIPPING_THRESHOLD"] = float(os.getenv("FREE_SHIPPING_THRESHOLD", "500"))
    app.config["SHIPPING_FLAT_RATE"] = float(os.getenv("SHIPPING_FLAT_RATE", "50"))
    app.config["TAX_RATE"] = float(os.getenv("TAX_RATE", "0.18"))
    app.config["PAYMENT_CURRENCY"] = os.getenv("PAYMENT_CURRENCY", "INR")
    app.config["RAZORPAY_KEY_ID"] = os.getenv("RAZORPAY_KEY_ID", "")
    app.config["RAZORPAY_KEY_SECRET"] = os.getenv("RAZORPAY_KEY_SECRET", "")
    app.config["PAYMENT_VERIFY_SIGNATURES"] = os.getenv("PAYMENT_VERIFY_SIGNATURES", "true").lower() == "true"
    app.config["RECOMMENDATION_LIMIT"] = int(os.getenv("RECOMMENDATION_LIMIT", "10"))
    app.config["DEFAULT_PAGE_SIZE"] = int(os.getenv("DEFAULT_PAGE_SIZE", "12"))
    app.config["MAX_PAGE_SIZE"] = int(os.getenv("MAX_PAGE_SIZE", "100"))
    app.config["TRENDING_SEARCH_DAYS"] = int(os.getenv("TRENDING_SEARCH_DAYS", "7"))
    app.config["LOG_LEVEL"] = os.getenv("LOG_LEVEL", "INFO").upper()
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(app.config["LOG_LEVEL"])
    db.init_app(app)
    app.extensions["payment_gateway"] = PaymentGateway(
        app.config["RAZORPAY_KEY_ID"],
        app.config["RAZORPAY_KEY_SECRET"],
        app.config["PAYMENT_CURRENCY"],
    )

    with app.app_context():
        db.create_all()

    def get_client_ip():
        forwarded = request.headers.get("X-Forwarded-For")
        return forwarded.split(",")[0].strip() if forwarded else (request.remote_addr or "unknown")

    def token_expiry(minutes):
        return utcnow() + timedelta(minutes=minutes)

    def log_admin_action(admin_id, action):
        db.session.add(
            AuditLog(
                admin_user_id=admin_id,
                action=action,
                ip_address=get_client_ip(),
                device_info=request.user_agent.string,
            )
        )
        db.session.commit()
        app.logger.info("admin %s: %s", admin_id, action)

    def record_error(source, message, severity="error"):
        try:
            db.session.add(ErrorLog(source=source, severity=severity, message=message[:4000]))
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            app.logger.exception("could not persist error log from %s", source)

    def issue_session(user):
        token = secrets.token_urlsafe(48)
        session = Session(
            user_id=user.id,
            session_token=token,
            expires_at=token_expiry(app.config["SESSION_IDLE_MINUTES"]),
            device_info=request.user_agent.string,
            ip_address=get_client_ip(),
            last_activity_at=utcnow(),
        )
        db.session.add(session)
        db.session.commit()
        return token

    def read_session_token():
        raw = request.cookies.get("session_token")
        if raw:
            return raw
        header = request.headers.get("Authorization", "")
        if header.lower().startswith("bearer "):
            return header[7:].strip() or None
        return None

    def get_active_session():
        raw = read_session_token()
        if not raw:
            return None
        session = Session.query.filter_by(session_token=raw).first()
        if not session:
            return None
        if as_utc(session.expires_at) < utcnow():
            db.session.delete(session)
            db.session.commit()
            return None
        session.last_activity_at = utcnow()
        session.expires_at = token_expiry(app.config["SESSION_IDLE_MINUTES"])
        db.session.commit()
        return session

    def get_optional_user():
        active_session = get_active_session()
        if not active_session:
            return None
        return db.session.get(User, active_session.user_id)

    def require_auth(role=None):
        def decorator(fn):
            @wraps(fn)
            def wrapped(*args, **kwargs):
                active_session = get_active_session()
                if not active_session:
                    return fail("Not authorized, please log in", 401)
                user = db.session.get(User, active_session.user_id)
                if not user:
                    return fail("User not found", 401)
                if not user.is_active:
                    return fail("Account deactivated", 403)
                if role and user.role != role:
                    return fail("Not authorized for this action", 403)
                request.current_user = user
                request.current_session = active_session
                return fn(*args, **kwargs)

            return wrapped

        return decorator

    def as_data():
        data = request.get_json(silent=True)
        if data is None:
            return request.form
        if not isinstance(data, dict):
            abort(400, description="Request body must be a JSON object")
        return data

    def page_args():
        page = max(request.args.get("page", 1, type=int) or 1, 1)
        limit = request.args.get("limit", app.config["DEFAULT_PAGE_SIZE"], type=int) or app.config["DEFAULT_PAGE_SIZE"]
        limit = min(max(limit, 1), app.config["MAX_PAGE_SIZE"])
        return page, limit

    def paginated(query, key, serializer):
        page, limit = page_args()
        total = query.count()
        rows = query.offset((page - 1) * limit).limit(limit).all()
        payload = {
            "count": len(rows),
            "total": total,
            "page": page,
            "pages": math.ceil(total / limit),
            key: [serializer(row) for row in rows],
        }
        return ok(**payload)

    def pricing_rules():
        return {
            "free_shipping_threshold": app.config["FREE_SHIPPING_THRESHOLD"],
            "shipping_flat_rate": app.config["SHIPPING_FLAT_RATE"],
            "tax_rate": app.config["TAX_RATE"],
        }

    def resolve_catalog_target(data):
        """Return ``(book, student_book, error_response)`` for a bookId/studentBookId payload."""
        book_id = data.get("bookId")
        student_book_id = data.get("studentBookId")
        if bool(book_id) == bool(student_book_id):
            return None, None, fail("Provide exactly one of bookId or studentBookId", 400)
        if book_id:
            book = db.session.get(Book, _as_number(book_id, int) or 0)
            if not book:
                return None, None, fail("Book not found", 404)
            return book, None, None
        student_book = db.session.get(StudentBook, _as_number(student_book_id, int) or 0)
        if not student_book:
            return None, None, fail("Student book not found", 404)
        return None, student_book, None

    def request_payment_session(order):
        gateway = app.extensions["payment_gateway"]
        try:
            session = gateway.create_order(
                amount=order.total_price,
                receipt=order.invoice_number,
                notes={"orderId": str(order.id)},
            )
        except Exception as exc:
            # The order stays placed and unpaid; the client can retry the session.
            app.logger.warning("payment session for %s failed: %s", order.invoice_number, exc)
            record_error("payment", f"payment session for {order.invoice_number} failed: {exc}", severity="warning")
            return None
        order.payment_session_id = session["id"]
        db.session.commit()
        return session

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        return fail(exc.description or exc.name, exc.code, error=exc.name)

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc):
        db.session.rollback()
        app.logger.exception("unhandled error on %s %s", request.method, request.path)
        record_error("api", f"{request.method} {request.path}: {exc}")
        return fail("Server error", 500, error=str(exc))

    @app.cli.command("create-admin")
    @click.option("--email", required=True)
    @click.option("--password", required=True)
    @click.option("--name", default="Admin")
    def create_admin_command(email, password, name):
        email = email.strip().lower()
        user = User.query.filter_by(email=email).first()
        if user:
            user.role = "admin"
            user.password_hash = generate_password_hash(password)
        else:
            user = User(name=name, email=email, password_hash=generate_password_hash(password), role="admin")
            db.session.add(user)
        db.session.commit()
        click.echo(f"admin ready: {email}")

    @app.get("/api/health")
    def health():
        db.session.execute(text("SELECT 1"))
        return jsonify({"success": True, "status": "ok", "database": "connected", "time": iso(utcnow())})

    @app.post("/api/auth/register")
    def register():
        data = as_data()
        name = (data.get("name") or "").strip()
        email = (data.get("email") or "").strip().lower()
        password = data.get("password") or ""
        role = data.get("role") or "user"
        class_level = data.get("classLevel") or None

        if not all([name, email, password]):
            return fail("Please provide name, email and password", 400)
        if "@" not in email:
            return fail("Invalid email address", 400)
        if len(password) < 6:
            return fail("Password must be at least 6 characters", 400)
        if role not in ("user", "student"):
            return fail("Invalid role", 400)
        if class_level and class_level not in CLASS_LEVELS:
            return fail("Invalid class", 400)
        if role == "student" and not class_level:
            return fail("Students must provide a class", 400)
        if User.query.filter_by(email=email).first():
            return fail("User already exists", 400)

        user = User(
            name=name,
            email=email,
            password_hash=generate_password_hash(password),
            role=role,
            class_level=class_level if role == "student" else None,
        )
        db.session.add(user)
        db.session.commit()
        app.logger.info("registered user %s", user.id)
        return ok(user=user_to_dict(user), status=201)

    @app.post("/api/auth/login")
    def login():
        data = as_data()
        email = (data.get("email") or "").strip().lower()
        password = data.get("password") or ""
        if not email or not password:
            return fail("Please provide email and password", 400)

        user = User.query.filter_by(email=email).first()
        if not user or not check_password_hash(user.password_hash, password):
            return fail("Invalid email or password", 401)
        if not user.is_active:
            return fail("Account deactivated", 403)

        token = issue_session(user)
        resp = make_response(jsonify({"success": True, "token": token, "user": user_to_dict(user)}))
        resp.set_cookie(
            "session_token",
            token,
            httponly=True,
            secure=app.config["SESSION_COOKIE_SECURE"],
            samesite="Strict",
            max_age=app.config["SESSION_IDLE_MINUTES"] * 60,
        )
        return resp

    @app.post("/api/auth/logout")
    @require_auth()
    def logout():
        db.session.delete(request.current_session)
        db.session.commit()
        resp = make_response(jsonify({"success": True, "message": "Logged out"}))
        resp.delete_cookie("session_token")
        return resp

    @app.get("/api/auth/me")
    @require_auth()
    def me():
        return ok(user=user_to_dict(request.current_user))

    @app.put("/api/auth/student-profile")
    @require_auth()
    def update_student_profile():
        data = as_data()
        class_level = data.get("classLevel") or data.get("class")
        if class_level not in CLASS_LEVELS:
            return fail("Invalid class", 400)
        user = request.current_user
        user.class_level = class_level
        if user.role == "user":
            user.role = "student"
        db.session.commit()
        return ok(user=user_to_dict(user))

    def filter_catalog(query, model):
        search = (request.args.get("search") or "").strip().lower()
        if search:
            query = query.filter(or_(
                func.lower(model.title).contains(search),
                func.lower(model.author).contains(search),
                func.lower(model.description).contains(search),
            ))
        if request.args.get("author"):
            query = query.filter(func.lower(model.author).contains(request.args["author"].lower()))
        if request.args.get("language"):
            query = query.filter(model.language == request.args["language"])
        min_price = request.args.get("minPrice", type=float)
        max_price = request.args.get("maxPrice", type=float)
        if min_price is not None:
            query = query.filter(model.price >= min_price)
        if max_price is not None:
            query = query.filter(model.price <= max_price)
        min_rating = request.args.get("minRating", type=float)
        max_rating = request.args.get("maxRating", type=float)
        if min_rating is not None:
            query = query.filter(model.rating_average >= min_rating)
        if max_rating is not None:
            query = query.filter(model.rating_average <= max_rating)
        if request.args.get("featured") == "true":
            query = query.filter(model.featured.is_(True))

        sort = request.args.get("sort")
        if sort == "price-low":
            query = query.order_by(model.price.asc(), model.id.asc())
        elif sort == "price-high":
            query = query.order_by(model.price.desc(), model.id.asc())
        elif sort == "rating":
            query = query.order_by(model.rating_average.desc(), model.rating_count.desc(), model.id.asc())
        else:
            # newest, also the default
            query = query.order_by(model.created_at.desc(), model.id.desc())
        return query

    @app.get("/api/books")
    def list_books():
        query = Book.query
        if request.args.get("category"):
            query = query.filter(Book.category == request.args["category"])
        if request.args.get("trending") == "true":
            query = query.filter(Book.trending.is_(True))
        if request.args.get("recentlyAdded") == "true":
            query = query.filter(Book.recently_added.is_(True))
        if request.args.get("bookType") in BOOK_TYPES:
            query = query.filter(Book.book_type == request.args["bookType"])
        return paginated(filter_catalog(query, Book), "books", book_to_dict)

    @app.get("/api/books/<int:book_id>")
    def get_book(book_id):
        book = db.session.get(Book, book_id)
        if not book:
            return fail("Book not found", 404)
        return ok(book=book_to_dict(book))

    def flagged_books(column):
        limit = min(request.args.get("limit", 10, type=int) or 10, app.config["MAX_PAGE_SIZE"])
        books = Book.query.filter(column.is_(True)).order_by(Book.rating_average.desc(), Book.id.desc()).limit(limit).all()
        return ok(count=len(books), books=[book_to_dict(book) for book in books])

    @app.get("/api/books/featured/list")
    def featured_books():
        return flagged_books(Book.featured)

    @app.get("/api/books/trending/list")
    def trending_books():
        return flagged_books(Book.trending)

    @app.get("/api/books/recent/list")
    def recent_books():
        limit = min(request.args.get("limit", 10, type=int) or 10, app.config["MAX_PAGE_SIZE"])
        books = Book.query.order_by(Book.created_at.desc(), Book.id.desc()).limit(limit).all()
        return ok(count=len(books), books=[book_to_dict(book) for book in books])

    @app.get("/api/student-books")
    def list_student_books():
        query = StudentBook.query
        if request.args.get("class"):
            query = query.filter(StudentBook.class_level == request.args["class"])
        if request.args.get("subject"):
            query = query.filter(StudentBook.subject == request.args["subject"])
        if request.args.get("isPreKG") == "true":
            query = query.filter(StudentBook.is_pre_kg.is_(True))
        return paginated(filter_catalog(query, StudentBook), "books", student_book_to_dict)

    @app.get("/api/student-books/<int:book_id>")
    def get_student_book(book_id):
        book = db.session.get(StudentBook, book_id)
        if not book:
            return fail("Book not found", 404)
        return ok(book=student_book_to_dict(book))

    @app.get("/api/student-books/class/<class_name>")
    def student_books_by_class(class_name):
        if class_name not in CLASS_LEVELS:
            return fail("Invalid class", 400)
        books = (
            StudentBook.query.filter_by(class_level=class_name)
            .order_by(StudentBook.subject.asc(), StudentBook.title.asc())
            .all()
        )
        return ok(count=len(books), books=[student_book_to_dict(book) for book in books])

    @app.get("/api/student-books/prekg/list")
    def prekg_books():
        books = (
            StudentBook.query.filter(or_(StudentBook.is_pre_kg.is_(True), StudentBook.class_level == "Pre-KG"))
            .order_by(StudentBook.rating_average.desc(), StudentBook.id.asc())
            .all()
        )
        return ok(count=len(books), books=[student_book_to_dict(book) for book in books])

    @app.get("/api/classes")
    def list_classes():
        classes = SchoolClass.query.all()
        classes.sort(key=lambda row: CLASS_LEVELS.index(row.name) if row.name in CLASS_LEVELS else len(CLASS_LEVELS))
        return ok(count=len(classes), classes=[class_to_dict(row) for row in classes])

    @app.post("/api/classes")
    @require_auth(role="admin")
    def create_class():
        data = as_data()
        name = data.get("name")
        if name not in CLASS_LEVELS:
            return fail("Invalid class name", 400)
        if SchoolClass.query.filter_by(name=name).first():
            return fail("Class already exists", 400)
        subjects = data.get("subjects") or []
        if not isinstance(subjects, list) or any(subject not in SUBJECTS for subject in subjects):
            return fail("Invalid subjects", 400)
        school_class = SchoolClass(
            name=name,
            description=(data.get("description") or "").strip(),
            age_group=(data.get("ageGroup") or "").strip(),
            subjects=subjects,
        )
        db.session.add(school_class)
        db.session.commit()
        log_admin_action(request.current_user.id, f"created class {name}")
        return ok(**{"class": class_to_dict(school_class)}, status=201)

    @app.get("/api/ebooks")
    def list_ebooks():
        query = EBook.query
        if request.args.get("class"):
            query = query.filter(EBook.class_level == request.args["class"])
        if request.args.get("category"):
            query = query.filter(EBook.category == request.args["category"])
        if request.args.get("unlockMethod"):
            query = query.filter(EBook.unlock_method == request.args["unlockMethod"])
        if request.args.get("isFree") == "true":
            query = query.filter(EBook.is_free.is_(True))
        search = (request.args.get("search") or "").strip().lower()
        if search:
            query = query.filter(or_(
                func.lower(EBook.title).contains(search),
                func.lower(EBook.author).contains(search),
                func.lower(EBook.description).contains(search),
            ))
        query = query.order_by(EBook.created_at.desc(), EBook.id.desc())
        return paginated(query, "ebooks", ebook_to_dict)

    @app.get("/api/ebooks/my-library")
    @require_auth()
    def my_library():
        accesses = (
            EBookAccess.query.filter_by(user_id=request.current_user.id)
            .order_by(EBookAccess.last_accessed.desc(), EBookAccess.id.desc())
            .all()
        )
        library = []
        for access in accesses:
            ebook = db.session.get(EBook, access.ebook_id)
            if ebook:
                entry = access_to_dict(access)
                entry["ebook"] = ebook_to_dict(ebook)
                library.append(entry)
        return ok(count=len(library), library=library)

    @app.get("/api/ebooks/<int:ebook_id>")
    def get_ebook(ebook_id):
        ebook = db.session.get(EBook, ebook_id)
        if not ebook:
            return fail("E-book not found", 404)
        return ok(ebook=ebook_to_dict(ebook))

    @app.get("/api/ebooks/<int:ebook_id>/check-access")
    @require_auth()
    def check_ebook_access(ebook_id):
        ebook = db.session.get(EBook, ebook_id)
        if not ebook:
            return fail("E-book not found", 404)
        decision = resolve_ebook_access(request.current_user, ebook)
        return ok(
            hasAccess=decision.has_access,
            accessMethod=decision.access_method,
            reason=decision.reason,
            ebook={
                "title": ebook.title,
                "unlockMethod": ebook.unlock_method,
                "isFree": ebook.is_free,
                "price": ebook.price,
            },
        )

    @app.post("/api/ebooks/<int:ebook_id>/unlock")
    @require_auth()
    def unlock_ebook(ebook_id):
        ebook = db.session.get(EBook, ebook_id)
        if not ebook:
            return fail("E-book not found", 404)
        user = request.current_user
        decision = resolve_ebook_access(user, ebook)
        if not decision.has_access:
            return fail(ACCESS_DENIED_MESSAGES[decision.reason], 403, error=decision.reason)

        access = grant_ebook_access(user, ebook, decision.access_method)
        db.session.commit()
        app.logger.info("user %s unlocked ebook %s via %s", user.id, ebook.id, access.access_method)
        return ok(message="E-book unlocked successfully", access=access_to_dict(access))

    @app.post("/api/ebooks/<int:ebook_id>/download")
    @require_auth()
    def download_ebook(ebook_id):
        ebook = db.session.get(EBook, ebook_id)
        if not ebook:
            return fail("E-book not found", 404)
        access = EBookAccess.query.filter_by(user_id=request.current_user.id, ebook_id=ebook.id).first()
        if not access:
            return fail("You do not have access to this e-book. Please unlock it first.", 403)

        EBookAccess.query.filter_by(id=access.id).update(
            {EBookAccess.download_count: EBookAccess.download_count + 1, EBookAccess.last_accessed: utcnow()},
            synchronize_session=False,
        )
        EBook.query.filter_by(id=ebook.id).update(
            {EBook.download_count: EBook.download_count + 1}, synchronize_session=False
        )
        db.session.commit()
        return ok(downloadUrl=ebook.file_url, fileType=ebook.file_type, title=ebook.title)

    @app.post("/api/ebooks/<int:ebook_id>/access")
    @require_auth()
    def touch_ebook_access(ebook_id):
        access = EBookAccess.query.filter_by(user_id=request.current_user.id, ebook_id=ebook_id).first()
        if not access:
            return fail("You do not have access to this e-book", 403)
        access.last_accessed = utcnow()
        db.session.commit()
        return ok(access=access_to_dict(access))

    @app.post("/api/ebooks")
    @require_auth(role="admin")
    def create_ebook():
        values, error = parse_ebook_payload(as_data())
        if error:
            return fail(error, 400)
        ebook = EBook(**values)
        db.session.add(ebook)
        db.session.commit()
        log_admin_action(request.current_user.id, f"created ebook {ebook.id}")
        return ok(ebook=ebook_to_dict(ebook, include_file=True), status=201)

    @app.put("/api/ebooks/<int:ebook_id>")
    @require_auth(role="admin")
    def update_ebook(ebook_id):
        ebook = db.session.get(EBook, ebook_id)
        if not ebook:
            return fail("E-book not found", 404)
        values, error = parse_ebook_payload(as_data(), partial=True)
        if error:
            return fail(error, 400)
        for attr, value in values.items():
            setattr(ebook, attr, value)
        db.session.commit()
        log_admin_action(request.current_user.id, f"updated ebook {ebook.id}")
        return ok(ebook=ebook_to_dict(ebook, include_file=True))

    @app.delete("/api/ebooks/<int:ebook_id>")
    @require_auth(role="admin")
    def delete_ebook(ebook_id):
        ebook = db.session.get(EBook, ebook_id)
        if not ebook:
            return fail("E-book not found", 404)
        EBookAccess.query.filter_by(ebook_id=ebook.id).delete(synchronize_session=False)
        db.session.delete(ebook)
        db.session.commit()
        log_admin_action(request.current_user.id, f"deleted ebook {ebook_id}")
        return ok(message="E-book removed")

    def get_or_create_cart(user):
        cart = Cart.query.filter_by(user_id=user.id).first()
        if not cart:
            cart = Cart(user_id=user.id, total_price=0)
            db.session.add(cart)
            try:
                db.session.commit()
            except IntegrityError:
                # created by a concurrent request
                db.session.rollback()
                cart = Cart.query.filter_by(user_id=user.id).one()
        return cart

    @app.get("/api/cart")
    @require_auth()
    def get_cart():
        return ok(cart=cart_to_dict(get_or_create_cart(request.current_user)))

    @app.post("/api/cart")
    @require_auth()
    def add_cart_item():
        data = as_data()
        quantity = _as_number(data.get("quantity", 1), int)
        if quantity is None or quantity < 1:
            return fail("Quantity must be a positive integer", 400)
        book, student_book, error = resolve_catalog_target(data)
        if error:
            return error

        cart = get_or_create_cart(request.current_user)
        add_to_cart(cart, book=book, student_book=student_book, quantity=quantity)
        db.session.commit()
        return ok(cart=cart_to_dict(cart))

    def find_cart_line(item_id):
        cart = Cart.query.filter_by(user_id=request.current_user.id).first()
        if not cart:
            return None, None
        for line in cart.items:
            if line.id == item_id:
                return cart, line
        return cart, None

    @app.put("/api/cart/<int:item_id>")
    @require_auth()
    def update_cart_item(item_id):
        quantity = _as_number(as_data().get("quantity"), int)
        if quantity is None:
            return fail("Quantity is required", 400)
        cart, line = find_cart_line(item_id)
        if not cart:
            return fail("Cart not found", 404)
        if not line:
            return fail("Item not found in cart", 404)

        if quantity <= 0:
            cart.items.remove(line)
        else:
            line.quantity = quantity
        recalculate_cart_total(cart)
        db.session.commit()
        return ok(cart=cart_to_dict(cart))

    @app.delete("/api/cart/<int:item_id>")
    @require_auth()
    def remove_cart_item(item_id):
        cart, line = find_cart_line(item_id)
        if not cart:
            return fail("Cart not found", 404)
        if not line:
            return fail("Item not found in cart", 404)
        cart.items.remove(line)
        recalculate_cart_total(cart)
        db.session.commit()
        return ok(cart=cart_to_dict(cart))

    @app.delete("/api/cart")
    @require_auth()
    def empty_cart():
        cart = Cart.query.filter_by(user_id=request.current_user.id).first()
        if cart:
            clear_cart(cart)
            db.session.commit()
        return ok(message="Cart cleared", cart=cart_to_dict(cart))

    @app.post("/api/orders")
    @require_auth()
    def create_order():
        data = as_data()
        user = request.current_user
        payment_method = data.get("paymentMethod")
        shipping_address = data.get("shippingAddress") or {}
        if payment_method not in PAYMENT_METHODS:
            return fail("Invalid payment method", 400)
        if not isinstance(shipping_address, dict):
            return fail("Invalid shipping address", 400)

        cart = Cart.query.filter_by(user_id=user.id).first()
        if not cart or not cart.items:
            return fail("Cart is empty", 400)

        order = build_order_from_cart(cart, user.id, shipping_address, payment_method, **pricing_rules())
        clear_cart(cart)
        db.session.flush()
        apply_stock_decrement(order)
        db.session.commit()
        app.logger.info("order %s placed by user %s for %.2f", order.invoice_number, user.id, order.total_price)

        payment_session = None
        if order.payment_method == "Razorpay":
            payment_session = request_payment_session(order)
        return ok(order=order_to_dict(order), paymentSession=payment_session, status=201)

    @app.get("/api/orders")
    @require_auth()
    def my_orders():
        orders = (
            Order.query.filter_by(user_id=request.current_user.id)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .all()
        )
        return ok(count=len(orders), orders=[order_to_dict(order) for order in orders])

    def load_visible_order(order_id):
        order = db.session.get(Order, order_id)
        if not order:
            return None, fail("Order not found", 404)
        user = request.current_user
        if order.user_id != user.id and user.role != "admin":
            return None, fail("Not authorized to view this order", 403)
        return order, None

    @app.get("/api/orders/<int:order_id>")
    @require_auth()
    def get_order(order_id):
        order, error = load_visible_order(order_id)
        if error:
            return error
        return ok(order=order_to_dict(order, include_user=True))

    @app.post("/api/orders/<int:order_id>/payment-session")
    @require_auth()
    def retry_payment_session(order_id):
        order = db.session.get(Order, order_id)
        if not order:
            return fail("Order not found", 404)
        if order.user_id != request.current_user.id:
            return fail("Not authorized", 403)
        if order.payment_method != "Razorpay":
            return fail("Order does not use online payment", 400)
        if order.is_paid:
            return fail("Order is already paid", 400)
        payment_session = request_payment_session(order)
        if not payment_session:
            return fail("Payment gateway unavailable, please retry", 500)
        return ok(order=order_to_dict(order), paymentSession=payment_session)

    @app.post("/api/orders/<int:order_id>/pay")
    @require_auth()
    def pay_order(order_id):
        order = db.session.get(Order, order_id)
        if not order:
            return fail("Order not found", 404)
        if order.user_id != request.current_user.id:
            return fail("Not authorized", 403)

        data = as_data()
        provider_order_id = data.get("orderId") or data.get("razorpay_order_id")
        payment_id = data.get("paymentId") or data.get("razorpay_payment_id")
        signature = data.get("signature") or data.get("razorpay_signature")

        if order.payment_method == "Razorpay" and app.config["PAYMENT_VERIFY_SIGNATURES"]:
            gateway = app.extensions["payment_gateway"]
            if (
                not order.payment_session_id
                or provider_order_id != order.payment_session_id
                or not gateway.verify_signature(provider_order_id, payment_id, signature)
            ):
                app.logger.warning("payment signature rejected for order %s", order.invoice_number)
                return fail("Payment verification failed", 400)

        order.is_paid = True
        order.paid_at = utcnow()
        order.provider_order_id = provider_order_id
        order.provider_payment_id = payment_id
        order.provider_signature = signature
        order.payment_status = "success"
        order.status = "Processing"
        db.session.commit()
        app.logger.info("order %s paid", order.invoice_number)
        return ok(order=order_to_dict(order))

    @app.put("/api/orders/<int:order_id>/deliver")
    @require_auth(role="admin")
    def update_order_status(order_id):
        order = db.session.get(Order, order_id)
        if not order:
            return fail("Order not found", 404)
        data = as_data()
        status = data.get("status") or "Delivered"
        if status not in ORDER_STATUSES:
            return fail("Invalid order status", 400)

        order.status = status
        if "trackingNumber" in data:
            order.tracking_number = (data.get("trackingNumber") or "").strip()
        if status == "Delivered":
            order.is_delivered = True
            order.delivered_at = utcnow()
        db.session.commit()
        log_admin_action(request.current_user.id, f"set order {order.invoice_number} to {status}")
        return ok(order=order_to_dict(order))

    def review_parent_exists(review):
        if review.book_id:
            return db.session.get(Book, review.book_id) is not None
        return db.session.get(StudentBook, review.student_book_id) is not None

    @app.get("/api/reviews/book/<int:book_id>")
    def book_reviews(book_id):
        reviews = Review.query.filter_by(book_id=book_id).order_by(Review.created_at.desc(), Review.id.desc()).all()
        return ok(count=len(reviews), reviews=[review_to_dict(review) for review in reviews])

    @app.get("/api/reviews/student-book/<int:book_id>")
    def student_book_reviews(book_id):
        reviews = (
            Review.query.filter_by(student_book_id=book_id)
            .order_by(Review.created_at.desc(), Review.id.desc())
            .all()
        )
        return ok(count=len(reviews), reviews=[review_to_dict(review) for review in reviews])

    def parse_rating(value):
        rating = _as_number(value, int)
        if rating is None or rating < 1 or rating > 5:
            return None
        return rating

    @app.post("/api/reviews")
    @require_auth()
    def create_review():
        data = as_data()
        rating = parse_rating(data.get("rating"))
        comment = (data.get("comment") or "").strip()
        if rating is None or not comment:
            return fail("Please provide a rating between 1 and 5 and a comment", 400)
        book, student_book, error = resolve_catalog_target(data)
        if error:
            return error

        user = request.current_user
        existing = Review.query.filter_by(
            user_id=user.id,
            book_id=book.id if book else None,
            student_book_id=student_book.id if student_book else None,
        ).first()
        if existing:
            return fail("You have already reviewed this item", 400)

        review = Review(
            user_id=user.id,
            book_id=book.id if book else None,
            student_book_id=student_book.id if student_book else None,
            rating=rating,
            comment=comment,
        )
        db.session.add(review)
        recalculate_rating(book_id=review.book_id, student_book_id=review.student_book_id)
        db.session.commit()
        return ok(review=review_to_dict(review), status=201)

    @app.put("/api/reviews/<int:review_id>")
    @require_auth()
    def update_review(review_id):
        review = db.session.get(Review, review_id)
        if not review:
            return fail("Review not found", 404)
        if review.user_id != request.current_user.id:
            return fail("Not authorized to update this review", 403)

        data = as_data()
        if "rating" in data:
            rating = parse_rating(data.get("rating"))
            if rating is None:
                return fail("Rating must be between 1 and 5", 400)
            review.rating = rating
        if "comment" in data:
            comment = (data.get("comment") or "").strip()
            if not comment:
                return fail("Comment cannot be empty", 400)
            review.comment = comment
        review.updated_at = utcnow()
        recalculate_rating(book_id=review.book_id, student_book_id=review.student_book_id)
        db.session.commit()
        return ok(review=review_to_dict(review))

    @app.delete("/api/reviews/<int:review_id>")
    @require_auth()
    def delete_review(review_id):
        review = db.session.get(Review, review_id)
        if not review:
            return fail("Review not found", 404)
        user = request.current_user
        if review.user_id != user.id and user.role != "admin":
            return fail("Not authorized to delete this review", 403)

        book_id, student_book_id = review.book_id, review.student_book_id
        db.session.delete(review)
        recalculate_rating(book_id=book_id, student_book_id=student_book_id)
        db.session.commit()
        return ok(message="Review removed")

    @app.get("/api/favourites")
    @require_auth()
    def list_favourites():
        favourites = (
            Favourite.query.filter_by(user_id=request.current_user.id)
            .order_by(Favourite.created_at.desc(), Favourite.id.desc())
            .all()
        )
        return ok(count=len(favourites), favourites=[favourite_to_dict(row) for row in favourites])

    @app.post("/api/favourites")
    @require_auth()
    def add_favourite():
        book, student_book, error = resolve_catalog_target(as_data())
        if error:
            return error
        user = request.current_user
        fields = {
            "user_id": user.id,
            "book_id": book.id if book else None,
            "student_book_id": student_book.id if student_book else None,
        }
        if Favourite.query.filter_by(**fields).first():
            return fail("Already in favourites", 400)
        favourite = Favourite(**fields)
        db.session.add(favourite)
        db.session.commit()
        return ok(favourite=favourite_to_dict(favourite), status=201)

    @app.delete("/api/favourites/<int:favourite_id>")
    @require_auth()
    def remove_favourite(favourite_id):
        favourite = db.session.get(Favourite, favourite_id)
        if not favourite:
            return fail("Favourite not found", 404)
        if favourite.user_id != request.current_user.id:
            return fail("Not authorized", 403)
        db.session.delete(favourite)
        db.session.commit()
        return ok(message="Removed from favourites")

    @app.get("/api/favourites/check")
    @require_auth()
    def check_favourite():
        book_id = request.args.get("bookId", type=int)
        student_book_id = request.args.get("studentBookId", type=int)
        if not book_id and not student_book_id:
            return fail("Provide bookId or studentBookId", 400)
        favourite = Favourite.query.filter_by(
            user_id=request.current_user.id,
            book_id=book_id or None,
            student_book_id=None if book_id else student_book_id,
        ).first()
        return ok(isFavourite=favourite is not None, favouriteId=favourite.id if favourite else None)

    @app.get("/api/recommendations")
    @require_auth()
    def recommendations():
        return ok(recommendations=build_recommendations(request.current_user, app.config["RECOMMENDATION_LIMIT"]))

    @app.get("/api/forum")
    def list_posts():
        query = ForumPost.query
        if request.args.get("genre"):
            query = query.filter(ForumPost.genre == request.args["genre"])
        if request.args.get("readingClub"):
            query = query.filter(ForumPost.reading_club == request.args["readingClub"])
        if request.args.get("sort") == "popular":
            upvotes = (
                db.session.query(func.count(ForumPostVote.id))
                .filter(ForumPostVote.post_id == ForumPost.id, ForumPostVote.value > 0)
                .correlate(ForumPost)
                .scalar_subquery()
            )
            query = query.order_by(upvotes.desc(), ForumPost.created_at.desc(), ForumPost.id.desc())
        else:
            query = query.order_by(ForumPost.created_at.desc(), ForumPost.id.desc())
        return paginated(query, "posts", lambda post: post_to_dict(post, include_comments=False))

    @app.get("/api/forum/<int:post_id>")
    def get_post(post_id):
        post = db.session.get(ForumPost, post_id)
        if not post:
            return fail("Post not found", 404)
        return ok(post=post_to_dict(post))

    @app.post("/api/forum")
    @require_auth()
    def create_post():
        data = as_data()
        title = (data.get("title") or "").strip()
        content = (data.get("content") or "").strip()
        genre = data.get("genre")
        reading_club = data.get("readingClub") or "General Discussion"
        if not title or not content or not genre:
            return fail("Please provide title, content and genre", 400)
        if genre not in FORUM_GENRES:
            return fail("Invalid genre", 400)
        if reading_club not in READING_CLUBS:
            return fail("Invalid reading club", 400)

        post = ForumPost(
            user_id=request.current_user.id,
            title=title,
            content=content,
            genre=genre,
            reading_club=reading_club,
        )
        db.session.add(post)
        db.session.commit()
        return ok(post=post_to_dict(post), status=201)

    def add_comment(post_id, parent_id=None):
        post = db.session.get(ForumPost, post_id)
        if not post:
            return fail("Post not found", 404)
        if parent_id is not None:
            parent = db.session.get(ForumComment, parent_id)
            if not parent or parent.post_id != post.id:
                return fail("Comment not found", 404)
            if parent.parent_id is not None:
                return fail("Replies can only be added to top-level comments", 400)
        content = (as_data().get("content") or "").strip()
        if not content:
            return fail("Comment content is required", 400)

        db.session.add(ForumComment(post_id=post.id, parent_id=parent_id, user_id=request.current_user.id, content=content))
        post.updated_at = utcnow()
        db.session.commit()
        return ok(post=post_to_dict(post), status=201)

    @app.post("/api/forum/<int:post_id>/comment")
    @require_auth()
    def comment_on_post(post_id):
        return add_comment(post_id)

    @app.post("/api/forum/<int:post_id>/comment/<int:comment_id>/reply")
    @require_auth()
    def reply_to_comment(post_id, comment_id):
        return add_comment(post_id, parent_id=comment_id)

    def vote_on_post(post_id, value):
        post = db.session.get(ForumPost, post_id)
        if not post:
            return fail("Post not found", 404)
        user_id = request.current_user.id
        vote = ForumPostVote.query.filter_by(post_id=post.id, user_id=user_id).first()
        if vote and vote.value == value:
            db.session.delete(vote)
        elif vote:
            vote.value = value
        else:
            db.session.add(ForumPostVote(post_id=post.id, user_id=user_id, value=value))
        db.session.commit()
        data = post_to_dict(post, include_comments=False)
        return ok(upvotes=data["upvotes"], downvotes=data["downvotes"])

    @app.post("/api/forum/<int:post_id>/upvote")
    @require_auth()
    def upvote_post(post_id):
        return vote_on_post(post_id, 1)

    @app.post("/api/forum/<int:post_id>/downvote")
    @require_auth()
    def downvote_post(post_id):
        return vote_on_post(post_id, -1)

    @app.post("/api/forum/<int:post_id>/comment/<int:comment_id>/upvote")
    @require_auth()
    def upvote_comment(post_id, comment_id):
        comment = db.session.get(ForumComment, comment_id)
        if not comment or comment.post_id != post_id:
            return fail("Comment not found", 404)
        user_id = request.current_user.id
        vote = ForumCommentVote.query.filter_by(comment_id=comment.id, user_id=user_id).first()
        if vote:
            db.session.delete(vote)
        else:
            db.session.add(ForumCommentVote(comment_id=comment.id, user_id=user_id))
        db.session.commit()
        return ok(upvotes=comment_to_dict(comment)["upvotes"])

    @app.get("/api/marketplace")
    def list_listings():
        status = request.args.get("status") or "active"
        query = ExchangeListing.query.filter(ExchangeListing.status == status)
        if request.args.get("category"):
            query = query.filter(ExchangeListing.category == request.args["category"])
        if request.args.get("class"):
            query = query.filter(ExchangeListing.class_level == request.args["class"])
        if request.args.get("condition"):
            query = query.filter(ExchangeListing.condition == request.args["condition"])
        min_price = request.args.get("minPrice", type=float)
        max_price = request.args.get("maxPrice", type=float)
        if min_price is not None:
            query = query.filter(ExchangeListing.price >= min_price)
        if max_price is not None:
            query = query.filter(ExchangeListing.price <= max_price)
        search = (request.args.get("search") or "").strip().lower()
        if search:
            query = query.filter(or_(
                func.lower(ExchangeListing.title).contains(search),
                func.lower(ExchangeListing.author).contains(search),
                func.lower(ExchangeListing.description).contains(search),
            ))
        query = query.order_by(ExchangeListing.created_at.desc(), ExchangeListing.id.desc())
        return paginated(query, "listings", listing_to_dict)

    @app.get("/api/marketplace/my-listings")
    @require_auth()
    def my_listings():
        listings = (
            ExchangeListing.query.filter_by(seller_id=request.current_user.id)
            .order_by(ExchangeListing.created_at.desc(), ExchangeListing.id.desc())
            .all()
        )
        return ok(count=len(listings), listings=[listing_to_dict(row) for row in listings])

    @app.get("/api/marketplace/<int:listing_id>")
    def get_listing(listing_id):
        listing = db.session.get(ExchangeListing, listing_id)
        if not listing:
            return fail("Listing not found", 404)
        listing.views = (listing.views or 0) + 1
        db.session.commit()
        return ok(listing=listing_to_dict(listing))

    @app.post("/api/marketplace")
    @require_auth()
    def create_listing():
        values, error = parse_listing_payload(as_data())
        if error:
            return fail(error, 400)
        listing = ExchangeListing(seller_id=request.current_user.id, **values)
        db.session.add(listing)
        db.session.commit()
        return ok(listing=listing_to_dict(listing), status=201)

    def load_own_listing(listing_id):
        listing = db.session.get(ExchangeListing, listing_id)
        if not listing:
            return None, fail("Listing not found", 404)
        if listing.seller_id != request.current_user.id:
            return None, fail("Not authorized to modify this listing", 403)
        return listing, None

    @app.put("/api/marketplace/<int:listing_id>")
    @require_auth()
    def update_listing(listing_id):
        listing, error = load_own_listing(listing_id)
        if error:
            return error
        data = as_data()
        values, problem = parse_listing_payload(data, partial=True)
        if problem:
            return fail(problem, 400)
        if "status" in data:
            if data["status"] not in LISTING_STATUSES:
                return fail("Invalid status", 400)
            values["status"] = data["status"]
        for attr, value in values.items():
            setattr(listing, attr, value)
        db.session.commit()
        return ok(listing=listing_to_dict(listing))

    @app.delete("/api/marketplace/<int:listing_id>")
    @require_auth()
    def remove_listing(listing_id):
        listing, error = load_own_listing(listing_id)
        if error:
            return error
        listing.status = "removed"
        db.session.commit()
        return ok(message="Listing removed")

    @app.post("/api/marketplace/<int:listing_id>/interest")
    @require_auth()
    def toggle_interest(listing_id):
        listing = db.session.get(ExchangeListing, listing_id)
        if not listing:
            return fail("Listing not found", 404)
        user_id = request.current_user.id
        if listing.seller_id == user_id:
            return fail("You cannot mark interest in your own listing", 400)

        interest = ExchangeInterest.query.filter_by(listing_id=listing.id, user_id=user_id).first()
        if interest:
            db.session.delete(interest)
            interested = False
        else:
            db.session.add(ExchangeInterest(listing_id=listing.id, user_id=user_id))
            interested = True
        db.session.commit()
        return ok(interested=interested, listing=listing_to_dict(listing))

    @app.post("/api/marketplace/<int:listing_id>/sold")
    @require_auth()
    def mark_listing_sold(listing_id):
        listing, error = load_own_listing(listing_id)
        if error:
            return error
        buyer_id = _as_number(as_data().get("buyerId"), int)
        if buyer_id is not None and db.session.get(User, buyer_id) is None:
            return fail("Buyer not found", 404)
        listing.status = "sold"
        listing.sold_to_id = buyer_id
        listing.sold_at = utcnow()
        db.session.commit()
        return ok(listing=listing_to_dict(listing))

    def is_interested(listing_id, user_id):
        return ExchangeInterest.query.filter_by(listing_id=listing_id, user_id=user_id).first() is not None

    @app.get("/api/marketplace/messages/listing/<int:listing_id>")
    @require_auth()
    def listing_messages(listing_id):
        listing = db.session.get(ExchangeListing, listing_id)
        if not listing:
            return fail("Listing not found", 404)
        user_id = request.current_user.id
        if listing.seller_id != user_id and not is_interested(listing.id, user_id):
            return fail("Not authorized to view these messages", 403)

        messages = (
            ExchangeMessage.query.filter(
                ExchangeMessage.listing_id == listing.id,
                or_(ExchangeMessage.sender_id == user_id, ExchangeMessage.receiver_id == user_id),
            )
            .order_by(ExchangeMessage.created_at.asc(), ExchangeMessage.id.asc())
            .all()
        )
        now = utcnow()
        for message in messages:
            if message.receiver_id == user_id and not message.is_read:
                message.is_read = True
                message.read_at = now
        db.session.commit()
        return ok(count=len(messages), messages=[message_to_dict(message) for message in messages])

    @app.post("/api/marketplace/messages")
    @require_auth()
    def send_message():
        data = as_data()
        listing_id = _as_number(data.get("listingId"), int)
        receiver_id = _as_number(data.get("receiverId"), int)
        body = (data.get("message") or "").strip()
        if not listing_id or not receiver_id or not body:
            return fail("Please provide listingId, receiverId and message", 400)

        listing = db.session.get(ExchangeListing, listing_id)
        if not listing:
            return fail("Listing not found", 404)
        sender_id = request.current_user.id
        if sender_id == receiver_id:
            return fail("You cannot message yourself", 400)
        if listing.seller_id != sender_id and not is_interested(listing.id, sender_id):
            return fail("You must mark interest in this listing before messaging", 403)
        if receiver_id != listing.seller_id and not is_interested(listing.id, receiver_id):
            return fail("Invalid receiver for this listing", 403)

        message = ExchangeMessage(listing_id=listing.id, sender_id=sender_id, receiver_id=receiver_id, message=body)
        db.session.add(message)
        db.session.commit()
        return ok(message=message_to_dict(message), status=201)

    @app.get("/api/marketplace/messages/conversations")
    @require_auth()
    def conversations():
        user_id = request.current_user.id
        messages = (
            ExchangeMessage.query.filter(
                or_(ExchangeMessage.sender_id == user_id, ExchangeMessage.receiver_id == user_id)
            )
            .order_by(ExchangeMessage.created_at.desc(), ExchangeMessage.id.desc())
            .all()
        )
        grouped = {}
        for message in messages:
            entry = grouped.get(message.listing_id)
            if entry is None:
                listing = db.session.get(ExchangeListing, message.listing_id)
                other_id = message.receiver_id if message.sender_id == user_id else message.sender_id
                entry = {
                    "listing": {"id": listing.id, "title": listing.title, "status": listing.status} if listing else None,
                    "otherUser": user_summary(db.session.get(User, other_id)),
                    "lastMessage": message_to_dict(message),
                    "unreadCount": 0,
                }
                grouped[message.listing_id] = entry
            if message.receiver_id == user_id and not message.is_read:
                entry["unreadCount"] += 1
        return ok(count=len(grouped), conversations=list(grouped.values()))

    @app.get("/api/marketplace/messages/unread-count")
    @require_auth()
    def unread_count():
        count = ExchangeMessage.query.filter_by(receiver_id=request.current_user.id, is_read=False).count()
        return ok(unreadCount=count)

    @app.get("/api/search/suggestions")
    def search_suggestions():
        query_text = (request.args.get("q") or "").strip()
        if len(query_text) < 2:
            return ok(suggestions=[])
        limit = min(request.args.get("limit", 8, type=int) or 8, 20)
        needle = query_text.lower()

        suggestions = []
        for model, kind in ((Book, "book"), (StudentBook, "studentBook")):
            rows = (
                model.query.filter(or_(
                    func.lower(model.title).contains(needle),
                    func.lower(model.author).contains(needle),
                ))
                .order_by(model.rating_average.desc(), model.id.asc())
                .limit(limit)
                .all()
            )
            for row in rows:
                suggestions.append({
                    "id": row.id,
                    "type": kind,
                    "title": row.title,
                    "author": row.author,
                    "coverImage": row.cover_image,
                    "price": row.price,
                })
        return ok(suggestions=suggestions[:limit])

    @app.get("/api/search/trending")
    def trending_searches():
        days = request.args.get("days", app.config["TRENDING_SEARCH_DAYS"], type=int) or app.config["TRENDING_SEARCH_DAYS"]
        limit = min(request.args.get("limit", 10, type=int) or 10, 50)
        since = utcnow() - timedelta(days=days)
        rows = (
            db.session.query(
                SearchHistory.query_text,
                func.count(SearchHistory.id).label("count"),
                func.max(SearchHistory.created_at).label("last_searched"),
            )
            .filter(SearchHistory.created_at >= since)
            .group_by(SearchHistory.query_text)
            .order_by(func.count(SearchHistory.id).desc(), func.max(SearchHistory.created_at).desc())
            .limit(limit)
            .all()
        )
        trending = [
            {"query": query_text, "count": count, "lastSearched": iso(last_searched)}
            for query_text, count, last_searched in rows
        ]
        return ok(trending=trending)

    @app.post("/api/search/log")
    def log_search():
        data = as_data()
        query_text = (data.get("query") or "").strip().lower()
        if not query_text:
            return ok(message="Nothing to log")
        search_type = data.get("searchType") if data.get("searchType") in SEARCH_TYPES else "all"
        try:
            user = get_optional_user()
            db.session.add(SearchHistory(
                user_id=user.id if user else None,
                query_text=query_text[:255],
                results_count=_as_number(data.get("resultsCount"), int) or 0,
                search_type=search_type,
                ip_address=get_client_ip(),
            ))
            db.session.commit()
        except SQLAlchemyError:
            # Search logging is best effort and never fails the request.
            db.session.rollback()
            app.logger.warning("could not log search %r", query_text, exc_info=True)
        return ok(message="Search logged")

    @app.get("/api/search/intelligent")
    def intelligent_search():
        query_text = (request.args.get("q") or "").strip()
        if not query_text:
            return fail("Search query is required", 400)
        search_type = request.args.get("type") or "all"
        if search_type not in SEARCH_TYPES:
            return fail("Invalid search type", 400)
        limit = min(request.args.get("limit", 20, type=int) or 20, app.config["MAX_PAGE_SIZE"])

        books = tiered_search(Book, query_text, limit) if search_type in ("books", "all") else []
        student_books = tiered_search(StudentBook, query_text, limit) if search_type in ("student-books", "all") else []
        return ok(
            query=query_text,
            total=len(books) + len(student_books),
            books=[book_to_dict(book) for book in books],
            studentBooks=[student_book_to_dict(book) for book in student_books],
        )

    @app.get("/api/admin/stats")
    @require_auth(role="admin")
    def admin_stats():
        revenue = db.session.query(func.coalesce(func.sum(Order.total_price), 0)).filter(Order.is_paid.is_(True)).scalar()
        recent = Order.query.order_by(Order.created_at.desc(), Order.id.desc()).limit(10).all()
        return ok(stats={
            "totalBooks": Book.query.count(),
            "totalStudentBooks": StudentBook.query.count(),
            "totalEbooks": EBook.query.count(),
            "totalOrders": Order.query.count(),
            "totalUsers": User.query.filter(User.role != "admin").count(),
            "totalRevenue": money(Decimal(str(revenue or 0))),
            "pendingOrders": Order.query.filter_by(status="Pending").count(),
            "recentOrders": [order_to_dict(order, include_user=True) for order in recent],
        })

    def admin_create(model, kind, serializer):
        values, error = parse_catalog_payload(as_data(), kind)
        if error:
            return fail(error, 400)
        if values.get("isbn") and model.query.filter_by(isbn=values["isbn"]).first():
            return fail("A book with this ISBN already exists", 400)
        row = model(**values)
        db.session.add(row)
        db.session.commit()
        log_admin_action(request.current_user.id, f"created {kind} {row.id}: {row.title}")
        return ok(book=serializer(row), status=201)

    def admin_update(model, kind, serializer, row_id):
        row = db.session.get(model, row_id)
        if not row:
            return fail("Book not found", 404)
        values, error = parse_catalog_payload(as_data(), kind, partial=True)
        if error:
            return fail(error, 400)
        if values.get("isbn") and model.query.filter(model.isbn == values["isbn"], model.id != row.id).first():
            return fail("A book with this ISBN already exists", 400)
        for attr, value in values.items():
            setattr(row, attr, value)
        db.session.commit()
        log_admin_action(request.current_user.id, f"updated {kind} {row.id}")
        return ok(book=serializer(row))

    def admin_delete(model, kind, row_id):
        row = db.session.get(model, row_id)
        if not row:
            return fail("Book not found", 404)
        db.session.delete(row)
        db.session.commit()
        log_admin_action(request.current_user.id, f"deleted {kind} {row_id}")
        return ok(message="Book removed")

    @app.post("/api/admin/books")
    @require_auth(role="admin")
    def admin_create_book():
        return admin_create(Book, "book", book_to_dict)

    @app.put("/api/admin/books/<int:book_id>")
    @require_auth(role="admin")
    def admin_update_book(book_id):
        return admin_update(Book, "book", book_to_dict, book_id)

    @app.delete("/api/admin/books/<int:book_id>")
    @require_auth(role="admin")
    def admin_delete_book(book_id):
        return admin_delete(Book, "book", book_id)

    @app.post("/api/admin/student-books")
    @require_auth(role="admin")
    def admin_create_student_book():
        return admin_create(StudentBook, "student book", student_book_to_dict)

    @app.put("/api/admin/student-books/<int:book_id>")
    @require_auth(role="admin")
    def admin_update_student_book(book_id):
        return admin_update(StudentBook, "student book", student_book_to_dict, book_id)

    @app.delete("/api/admin/student-books/<int:book_id>")
    @require_auth(role="admin")
    def admin_delete_student_book(book_id):
        return admin_delete(StudentBook, "student book", book_id)

    @app.get("/api/admin/orders")
    @require_auth(role="admin")
    def admin_orders():
        query = Order.query
        if request.args.get("status"):
            query = query.filter(Order.status == request.args["status"])
        query = query.order_by(Order.created_at.desc(), Order.id.desc())
        return paginated(query, "orders", lambda order: order_to_dict(order, include_user=True))

    @app.get("/api/admin/audit-logs")
    @require_auth(role="admin")
    def admin_audit_logs():
        query = AuditLog.query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        return paginated(query, "logs", lambda row: {
            "id": row.id,
            "admin": row.admin_user_id,
            "action": row.action,
            "ipAddress": row.ip_address,
            "createdAt": iso(row.created_at),
        })

    @app.get("/api/admin/error-logs")
    @require_auth(role="admin")
    def admin_error_logs():
        query = ErrorLog.query
        if request.args.get("severity"):
            query = query.filter(ErrorLog.severity == request.args["severity"])
        query = query.order_by(ErrorLog.created_at.desc(), ErrorLog.id.desc())
        return paginated(query, "logs", lambda row: {
            "id": row.id,
            "source": row.source,
            "severity": row.severity,
            "message": row.message,
            "createdAt": iso(row.created_at),
        })

    return app


app = create_app()


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")), debug=os.getenv("FLASK_DEBUG", "false").lower() == "true")
