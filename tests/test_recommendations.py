from bookhub import Favourite, Order, OrderItem, db


def paid_order(user, book, paid=True):
    order = Order(user_id=user.id, payment_method="Card", invoice_number=f"INV-{user.id}-{book.id}-{paid}", is_paid=paid)
    order.items.append(OrderItem(book_id=book.id, name=book.title, price=book.price, quantity=1))
    db.session.add(order)
    db.session.commit()


def fetch(client, user):
    return client.get("/api/recommendations", headers=user.headers).get_json()["recommendations"]


def titles(rows):
    return [row["title"] for row in rows]


def test_history_uses_paid_orders_and_excludes_purchases(client, make_user, make_book):
    user = make_user()
    bought = make_book(title="Bought", category="Mystery", author="K. Rao")
    make_book(title="Same Genre", category="Mystery", author="Someone", rating_average=4.8)
    make_book(title="Same Author", category="Poetry", author="K. Rao", rating_average=3.1)
    make_book(title="Unrelated", category="Science", author="Other")
    paid_order(user, bought)

    history = titles(fetch(client, user)["basedOnHistory"])

    assert history == ["Same Genre", "Same Author"]


def test_unpaid_orders_do_not_count(client, make_user, make_book):
    user = make_user()
    bought = make_book(category="Horror")
    make_book(title="Another Horror", category="Horror")
    paid_order(user, bought, paid=False)

    assert fetch(client, user)["basedOnHistory"] == []


def test_wishlist_recommendations(client, make_user, make_book):
    user = make_user()
    liked = make_book(title="Liked", category="Romance", author="A")
    make_book(title="Also Romance", category="Romance", author="B")
    db.session.add(Favourite(user_id=user.id, book_id=liked.id))
    db.session.commit()

    assert titles(fetch(client, user)["basedOnWishlist"]) == ["Also Romance"]


def test_class_recommendations_only_for_students(client, make_user, make_student_book):
    make_student_book(title="Fifth Grade Maths", class_level="Class 5", rating_average=4.0)
    make_student_book(title="Fifth Grade Science", class_level="Class 5", subject="Science", rating_average=4.5)
    make_student_book(title="Sixth Grade Maths", class_level="Class 6")
    student = make_user(role="student", class_level="Class 5")
    reader = make_user()

    assert titles(fetch(client, student)["basedOnClass"]) == ["Fifth Grade Science", "Fifth Grade Maths"]
    assert fetch(client, reader)["basedOnClass"] == []


def test_trending_and_popular(client, make_user, make_book):
    make_book(title="Hot", trending=True, rating_average=4.2, rating_count=3)
    make_book(title="Hotter", trending=True, rating_average=4.9, rating_count=1)
    make_book(title="Loved", rating_average=4.5, rating_count=12)
    make_book(title="Few Votes", rating_average=5, rating_count=2)
    make_book(title="Middling", rating_average=3.9, rating_count=40)
    user = make_user()

    recommendations = fetch(client, user)

    assert titles(recommendations["trending"]) == ["Hotter", "Hot"]
    assert titles(recommendations["popular"]) == ["Loved"]


def test_lists_are_capped(app, client, make_user, make_book):
    app.config["RECOMMENDATION_LIMIT"] = 2
    for n in range(4):
        make_book(title=f"Trend {n}", trending=True)

    assert len(fetch(client, make_user())["trending"]) == 2


def test_requires_login(client):
    assert client.get("/api/recommendations").status_code == 401
