from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from bookhub import SearchHistory, db, utcnow


def test_suggestions_need_two_characters(client, make_book):
    make_book(title="Harry Potter")
    assert client.get("/api/search/suggestions?q=h").get_json()["suggestions"] == []


def test_suggestions_match_titles_and_authors(client, make_book, make_student_book):
    make_book(title="Harry Potter", author="J. K. Rowling")
    make_book(title="Deep Work", author="Cal Newport")
    make_student_book(title="Harvest Poems", author="S. Nair")

    suggestions = client.get("/api/search/suggestions?q=har").get_json()["suggestions"]

    assert {(row["type"], row["title"]) for row in suggestions} == {
        ("book", "Harry Potter"),
        ("studentBook", "Harvest Poems"),
    }


def test_log_and_trending(client, make_user):
    user = make_user()
    for query in ("dune", "Dune", "gita", "dune"):
        resp = client.post("/api/search/log", json={"query": query, "resultsCount": 3}, headers=user.headers)
        assert resp.status_code == 200
    old = SearchHistory(query_text="gita", created_at=utcnow() - timedelta(days=30))
    db.session.add(old)
    db.session.commit()

    trending = client.get("/api/search/trending").get_json()["trending"]

    assert [(row["query"], row["count"]) for row in trending] == [("dune", 3), ("gita", 1)]
    assert SearchHistory.query.filter_by(user_id=user.id).count() == 4


def test_log_never_fails(client, monkeypatch):
    def broken_commit():
        raise SQLAlchemyError("database is locked")

    monkeypatch.setattr(db.session, "commit", broken_commit)

    resp = client.post("/api/search/log", json={"query": "anything"})

    assert resp.status_code == 200
    assert resp.get_json()["success"] is True


def test_intelligent_search_ranks_exact_then_partial_then_words(client, make_book):
    make_book(title="Midnight Library Tales", author="Someone")
    make_book(title="The Midnight Library", author="Matt Haig")
    make_book(title="Library of Souls", author="R. Riggs")
    make_book(title="Cooking Basics", author="Chef")

    body = client.get("/api/search/intelligent?q=the midnight library&type=books").get_json()

    titles = [book["title"] for book in body["books"]]
    assert titles[0] == "The Midnight Library"
    assert set(titles) == {"The Midnight Library", "Midnight Library Tales", "Library of Souls"}
    assert body["studentBooks"] == []
    assert body["total"] == 3


def test_intelligent_search_validation(client):
    assert client.get("/api/search/intelligent").status_code == 400
    assert client.get("/api/search/intelligent?q=dune&type=films").status_code == 400
