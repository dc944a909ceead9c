from bookhub import EBook, EBookAccess, Order, OrderItem, User, db, resolve_ebook_access


def place_order(user, book=None, student_book=None, paid=True, invoice="INV-1-TEST"):
    item = book or student_book
    order = Order(
        user_id=user.id,
        payment_method="Card",
        invoice_number=invoice,
        is_paid=paid,
        items_price=item.price,
        total_price=item.price,
    )
    order.items.append(OrderItem(
        book_id=book.id if book else None,
        student_book_id=student_book.id if student_book else None,
        name=item.title,
        price=item.price,
        quantity=1,
    ))
    db.session.add(order)
    db.session.commit()
    return order


def test_free_ebook_unlocks_for_anyone(client, make_user, make_ebook, reload):
    user = make_user()
    ebook = make_ebook(is_free=True, unlock_method="free")

    resp = client.post(f"/api/ebooks/{ebook.id}/unlock", headers=user.headers)

    assert resp.status_code == 200
    assert resp.get_json()["access"]["accessMethod"] == "free"
    assert reload(EBook, ebook.id).download_count == 1


def test_is_free_flag_overrides_unlock_method(client, make_user, make_ebook):
    user = make_user()
    ebook = make_ebook(is_free=True, unlock_method="purchase")

    body = client.get(f"/api/ebooks/{ebook.id}/check-access", headers=user.headers).get_json()

    assert body["hasAccess"] is True
    assert body["accessMethod"] == "free"


def test_class_ebook_requires_matching_student(client, make_user, make_ebook):
    ebook = make_ebook(unlock_method="class", class_level="Class 5")
    match = make_user(role="student", class_level="Class 5")
    other_class = make_user(role="student", class_level="Class 6")
    plain = make_user(class_level="Class 5")

    assert client.post(f"/api/ebooks/{ebook.id}/unlock", headers=match.headers).status_code == 200

    resp = client.post(f"/api/ebooks/{ebook.id}/unlock", headers=other_class.headers)
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "class_mismatch"
    assert "specified class" in resp.get_json()["message"]

    assert client.post(f"/api/ebooks/{ebook.id}/unlock", headers=plain.headers).status_code == 403


def test_purchase_ebook_needs_paid_order_for_linked_book(client, make_user, make_book, make_ebook):
    user = make_user()
    book = make_book()
    ebook = make_ebook(book_id=book.id, unlock_method="purchase")

    body = client.get(f"/api/ebooks/{ebook.id}/check-access", headers=user.headers).get_json()
    assert body["hasAccess"] is False
    assert body["accessMethod"] is None
    assert body["ebook"]["unlockMethod"] == "purchase"

    place_order(user, book=book, paid=False, invoice="INV-1-UNPAID")
    resp = client.post(f"/api/ebooks/{ebook.id}/unlock", headers=user.headers)
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "purchase_required"

    place_order(user, book=book, paid=True, invoice="INV-2-PAID")
    resp = client.post(f"/api/ebooks/{ebook.id}/unlock", headers=user.headers)
    assert resp.status_code == 200
    assert resp.get_json()["access"]["accessMethod"] == "purchase"


def test_purchase_of_linked_student_book_counts(client, make_user, make_student_book, make_ebook):
    user = make_user()
    student_book = make_student_book()
    ebook = make_ebook(student_book_id=student_book.id, unlock_method="purchase")
    place_order(user, student_book=student_book)

    body = client.get(f"/api/ebooks/{ebook.id}/check-access", headers=user.headers).get_json()

    assert body["hasAccess"] is True
    assert body["accessMethod"] == "purchase"


def test_existing_grant_is_sticky_after_class_change(client, make_user, make_ebook, reload):
    student = make_user(role="student", class_level="Class 5")
    ebook = make_ebook(unlock_method="class", class_level="Class 5")
    client.post(f"/api/ebooks/{ebook.id}/unlock", headers=student.headers)

    user = reload(User, student.id)
    user.class_level = "Class 6"
    db.session.commit()

    body = client.get(f"/api/ebooks/{ebook.id}/check-access", headers=student.headers).get_json()
    assert body["hasAccess"] is True
    assert body["accessMethod"] == "class"


def test_repeat_unlock_keeps_one_grant_and_counts_every_unlock(client, make_user, make_ebook, reload):
    user = make_user()
    ebook = make_ebook(is_free=True, unlock_method="free")

    client.post(f"/api/ebooks/{ebook.id}/unlock", headers=user.headers)
    client.post(f"/api/ebooks/{ebook.id}/unlock", headers=user.headers)

    assert EBookAccess.query.filter_by(user_id=user.id, ebook_id=ebook.id).count() == 1
    assert reload(EBook, ebook.id).download_count == 2


def test_denied_unlock_has_no_side_effects(client, make_user, make_ebook, reload):
    user = make_user()
    ebook = make_ebook(unlock_method="purchase")

    client.post(f"/api/ebooks/{ebook.id}/unlock", headers=user.headers)

    assert EBookAccess.query.count() == 0
    assert reload(EBook, ebook.id).download_count == 0


def test_download_requires_existing_grant(client, make_user, make_ebook, reload):
    user = make_user()
    ebook = make_ebook(is_free=True, unlock_method="free")

    assert client.post(f"/api/ebooks/{ebook.id}/download", headers=user.headers).status_code == 403

    client.post(f"/api/ebooks/{ebook.id}/unlock", headers=user.headers)
    resp = client.post(f"/api/ebooks/{ebook.id}/download", headers=user.headers)

    assert resp.status_code == 200
    assert resp.get_json()["downloadUrl"] == "https://files.example.com/ebooks/quiet-river.pdf"
    access = EBookAccess.query.filter_by(user_id=user.id).one()
    assert access.download_count == 1
    assert reload(EBook, ebook.id).download_count == 2


def test_unknown_policy_is_denied(app, make_user, make_ebook):
    user = make_user()
    ebook = make_ebook(unlock_method="subscription")

    decision = resolve_ebook_access(user, ebook)

    assert decision.has_access is False
    assert decision.reason == "no_unlock_policy"


def test_missing_ebook_is_404(client, make_user):
    user = make_user()
    assert client.get("/api/ebooks/999/check-access", headers=user.headers).status_code == 404
    assert client.post("/api/ebooks/999/unlock", headers=user.headers).status_code == 404


def test_access_routes_require_login(client, make_ebook):
    ebook = make_ebook()
    assert client.post(f"/api/ebooks/{ebook.id}/unlock").status_code == 401


def test_public_listing_hides_file_location(client, make_ebook):
    make_ebook(is_free=True, unlock_method="free")
    make_ebook(title="Class Reader", unlock_method="class", class_level="Class 2")

    body = client.get("/api/ebooks?unlockMethod=class").get_json()

    assert body["total"] == 1
    assert body["ebooks"][0]["title"] == "Class Reader"
    assert "fileUrl" not in body["ebooks"][0]


def test_my_library_lists_unlocked_ebooks(client, make_user, make_ebook):
    user = make_user()
    ebook = make_ebook(is_free=True, unlock_method="free")
    make_ebook(title="Locked", unlock_method="purchase")
    client.post(f"/api/ebooks/{ebook.id}/unlock", headers=user.headers)

    body = client.get("/api/ebooks/my-library", headers=user.headers).get_json()

    assert body["count"] == 1
    assert body["library"][0]["ebook"]["id"] == ebook.id


def test_admin_manages_ebooks(client, make_user, make_book):
    admin = make_user(role="admin")
    book = make_book()
    payload = {
        "title": "River Notes",
        "author": "Asha Menon",
        "description": "Companion e-book.",
        "fileUrl": "https://files.example.com/river-notes.epub",
        "fileType": "EPUB",
        "unlockMethod": "purchase",
        "book": book.id,
    }

    resp = client.post("/api/ebooks", json=payload, headers=admin.headers)
    assert resp.status_code == 201
    ebook_id = resp.get_json()["ebook"]["id"]

    bad = client.put(f"/api/ebooks/{ebook_id}", json={"unlockMethod": "rental"}, headers=admin.headers)
    assert bad.status_code == 400

    assert client.delete(f"/api/ebooks/{ebook_id}", headers=admin.headers).status_code == 200
    assert db.session.get(EBook, ebook_id) is None


def test_non_admin_cannot_create_ebooks(client, make_user):
    user = make_user()
    resp = client.post("/api/ebooks", json={"title": "x"}, headers=user.headers)
    assert resp.status_code == 403


def test_existing_grant_survives_unlock_method_change(client, make_user, make_ebook, reload):
    user = make_user()
    ebook = make_ebook(unlock_method="free", is_free=True)
    assert client.post(f"/api/ebooks/{ebook.id}/unlock", headers=user.headers).status_code == 200

    stored = reload(EBook, ebook.id)
    stored.unlock_method = "purchase"
    stored.is_free = False
    db.session.commit()

    body = client.get(f"/api/ebooks/{ebook.id}/check-access", headers=user.headers).get_json()
    assert body["hasAccess"] is True
    assert body["accessMethod"] == "free"

    newcomer = make_user()
    body = client.get(f"/api/ebooks/{ebook.id}/check-access", headers=newcomer.headers).get_json()
    assert body["hasAccess"] is False
    assert body["reason"] == "purchase_required"
