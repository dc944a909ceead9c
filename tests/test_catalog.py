from bookhub import Favourite, SchoolClass, db


def test_book_listing_filters_sorts_and_paginates(client, make_book):
    make_book(title="Cheap Thriller", category="Thriller", price=99)
    make_book(title="Pricey Thriller", category="Thriller", price=899)
    make_book(title="Poems", category="Poetry", price=150)

    body = client.get("/api/books?category=Thriller&sort=price-high").get_json()
    assert [book["title"] for book in body["books"]] == ["Pricey Thriller", "Cheap Thriller"]

    body = client.get("/api/books?minPrice=100&maxPrice=500").get_json()
    assert body["total"] == 1
    assert body["books"][0]["title"] == "Poems"

    body = client.get("/api/books?limit=2&page=2&sort=price-low").get_json()
    assert body["total"] == 3
    assert body["pages"] == 2
    assert body["count"] == 1
    assert body["books"][0]["title"] == "Pricey Thriller"

    assert client.get("/api/books?search=poem").get_json()["total"] == 1


def test_book_detail_and_flag_lists(client, make_book):
    featured = make_book(title="Featured", featured=True)
    make_book(title="Trending", trending=True)

    assert client.get(f"/api/books/{featured.id}").get_json()["book"]["title"] == "Featured"
    assert client.get("/api/books/999").status_code == 404
    assert [row["title"] for row in client.get("/api/books/featured/list").get_json()["books"]] == ["Featured"]
    assert [row["title"] for row in client.get("/api/books/trending/list").get_json()["books"]] == ["Trending"]
    assert client.get("/api/books/recent/list").get_json()["count"] == 2


def test_student_books_by_class_and_prekg(client, make_student_book):
    make_student_book(title="Maths 5", class_level="Class 5")
    make_student_book(title="Rhymes", class_level="Pre-KG", subject="Story Books", is_pre_kg=True)

    body = client.get("/api/student-books/class/Class%205").get_json()
    assert [row["title"] for row in body["books"]] == ["Maths 5"]
    assert client.get("/api/student-books/class/Class%2013").status_code == 400
    assert client.get("/api/student-books/prekg/list").get_json()["books"][0]["title"] == "Rhymes"
    assert client.get("/api/student-books?subject=Mathematics").get_json()["total"] == 1


def test_classes_are_admin_managed(client, make_user):
    admin = make_user(role="admin")
    user = make_user()
    payload = {"name": "Class 3", "ageGroup": "8-9", "subjects": ["English", "Mathematics"]}

    assert client.post("/api/classes", json=payload, headers=user.headers).status_code == 403
    assert client.post("/api/classes", json=payload, headers=admin.headers).status_code == 201
    assert client.post("/api/classes", json=payload, headers=admin.headers).status_code == 400
    assert client.post("/api/classes", json={"name": "Class 99"}, headers=admin.headers).status_code == 400
    client.post("/api/classes", json={"name": "LKG"}, headers=admin.headers)

    names = [row["name"] for row in client.get("/api/classes").get_json()["classes"]]
    assert names == ["LKG", "Class 3"]
    assert SchoolClass.query.count() == 2


def test_favourites(client, make_user, make_book):
    user = make_user()
    other = make_user()
    book = make_book()

    resp = client.post("/api/favourites", json={"bookId": book.id}, headers=user.headers)
    assert resp.status_code == 201
    favourite_id = resp.get_json()["favourite"]["id"]
    assert client.post("/api/favourites", json={"bookId": book.id}, headers=user.headers).status_code == 400

    check = client.get(f"/api/favourites/check?bookId={book.id}", headers=user.headers).get_json()
    assert check["isFavourite"] is True
    assert client.get("/api/favourites", headers=user.headers).get_json()["favourites"][0]["item"]["id"] == book.id

    assert client.delete(f"/api/favourites/{favourite_id}", headers=other.headers).status_code == 403
    assert client.delete(f"/api/favourites/{favourite_id}", headers=user.headers).status_code == 200
    db.session.expire_all()
    assert Favourite.query.count() == 0


def test_book_listing_rating_type_and_recent_filters(client, make_book):
    make_book(title="Low", rating_average=1.0, book_type="Physical")
    make_book(title="High", rating_average=4.5, book_type="E-Book", recently_added=True)
    make_book(title="Middle", rating_average=3.0, book_type="Both")

    def titles(query):
        return [book["title"] for book in client.get(f"/api/books?{query}").get_json()["books"]]

    assert titles("minRating=4") == ["High"]
    assert titles("maxRating=3&sort=rating") == ["Middle", "Low"]
    assert titles("minRating=2&maxRating=4") == ["Middle"]
    assert titles("bookType=E-Book") == ["High"]
    assert titles("bookType=Both") == ["Middle"]
    assert titles("recentlyAdded=true") == ["High"]
    assert titles("sort=newest") == ["Middle", "High", "Low"]


def test_student_book_listing_rating_filter(client, make_student_book):
    make_student_book(title="Well liked", rating_average=4.8)
    make_student_book(title="Unrated")

    body = client.get("/api/student-books?minRating=4").get_json()

    assert [book["title"] for book in body["books"]] == ["Well liked"]
