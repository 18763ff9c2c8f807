from conftest import PASSWORD, auth_header


def create_store_via_api(client, admin, owner, n=1):
    res = client.post(
        "/stores",
        json={"name": f"Store {n}", "email": f"shop{n}@example.com", "address": "1 High Street", "owner_id": str(owner["_id"])},
        headers=auth_header(admin),
    )
    assert res.status_code == 201, res.text
    return res.json()


def test_root(client):
    assert client.get("/").json() == {"message": "Store Rating API is running"}


def test_register_and_login(client):
    res = client.post(
        "/auth/register",
        json={"name": "Jane Doe", "email": "jane@example.com", "password": PASSWORD, "address": "1 Elm Road"},
    )
    assert res.status_code == 201
    body = res.json()
    assert body["token_type"] == "bearer"
    assert body["user"]["role"] == "user"
    assert "password_hash" not in body["user"]

    res = client.post("/auth/login", json={"email": "jane@example.com", "password": PASSWORD})
    assert res.status_code == 200
    token = res.json()["access_token"]

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["email"] == "jane@example.com"


def test_register_conflict_and_policy(client, make_user):
    make_user(email="taken@example.com")
    res = client.post(
        "/auth/register",
        json={"name": "Jane Doe", "email": "taken@example.com", "password": PASSWORD, "address": "1 Elm Road"},
    )
    assert res.status_code == 409
    assert res.json() == {"kind": "conflict", "message": "User already exists"}

    res = client.post(
        "/auth/register",
        json={"name": "Jane Doe", "email": "new@example.com", "password": "weak", "address": "1 Elm Road"},
    )
    assert res.status_code == 400
    assert res.json()["kind"] == "invalid_input"


def test_login_bad_credentials(client, make_user):
    user = make_user()
    res = client.post("/auth/login", json={"email": user["email"], "password": "Wrong@pass1"})
    assert res.status_code == 401
    assert res.json() == {"kind": "unauthenticated", "message": "Invalid email or password"}


def test_missing_and_invalid_token(client):
    res = client.get("/ratings/user")
    assert res.status_code == 401
    assert res.json()["kind"] == "unauthenticated"
    assert set(res.json()) == {"kind", "message"}

    res = client.get("/ratings/user", headers={"Authorization": "Bearer not-a-token"})
    assert res.status_code == 401


def test_admin_routes_forbid_users(client, make_user):
    user = make_user()
    res = client.post(
        "/stores",
        json={"name": "Store", "email": "s@example.com", "address": "1 High Street", "owner_id": str(user["_id"])},
        headers=auth_header(user),
    )
    assert res.status_code == 403
    assert res.json()["kind"] == "forbidden"
    assert client.get("/users", headers=auth_header(user)).status_code == 403


def test_store_body_cannot_set_aggregate(client, admin, make_user):
    owner = make_user()
    res = client.post(
        "/stores",
        json={
            "name": "Store",
            "email": "s@example.com",
            "address": "1 High Street",
            "owner_id": str(owner["_id"]),
            "average_rating": 5,
        },
        headers=auth_header(admin),
    )
    assert res.status_code == 422
    assert res.json()["kind"] == "invalid_input"

    store = create_store_via_api(client, admin, owner)
    res = client.put(f"/stores/{store['id']}", json={"total_ratings": 100}, headers=auth_header(admin))
    assert res.status_code == 422
    assert client.get(f"/stores/{store['id']}").json()["total_ratings"] == 0


def test_rating_flow(client, db, admin, make_user):
    owner, alice, bob = make_user(), make_user(), make_user()
    store = create_store_via_api(client, admin, owner)
    assert (store["average_rating"], store["total_ratings"]) == (0.0, 0)

    res = client.post("/ratings", json={"store_id": store["id"], "rating": 4}, headers=auth_header(alice))
    assert res.status_code == 201
    alice_rating = res.json()

    res = client.post("/ratings", json={"store_id": store["id"], "rating": 2}, headers=auth_header(bob))
    bob_rating = res.json()
    detail = client.get(f"/stores/{store['id']}").json()
    assert (detail["average_rating"], detail["total_ratings"]) == (3.0, 2)

    res = client.post("/ratings", json={"store_id": store["id"], "rating": 5}, headers=auth_header(alice))
    assert res.status_code == 200
    assert res.json()["id"] == alice_rating["id"]
    detail = client.get(f"/stores/{store['id']}").json()
    assert (detail["average_rating"], detail["total_ratings"]) == (3.5, 2)

    res = client.delete(f"/ratings/{bob_rating['id']}", headers=auth_header(bob))
    assert res.status_code == 200
    listed = client.get("/stores").json()
    assert [(s["average_rating"], s["total_ratings"]) for s in listed] == [(5.0, 1)]
    assert listed[0]["owner"]["id"] == str(owner["_id"])

    res = client.get(f"/ratings/store/{store['id']}", headers=auth_header(bob))
    assert res.status_code == 404
    assert res.json() == {"kind": "not_found", "message": "Rating not found"}
    res = client.get(f"/ratings/store/{store['id']}", headers=auth_header(alice))
    assert res.json()["rating"] == 5


def test_rating_bounds(client, admin, make_user):
    user = make_user()
    store = create_store_via_api(client, admin, make_user())
    for value in (0, 6):
        res = client.post("/ratings", json={"store_id": store["id"], "rating": value}, headers=auth_header(user))
        assert res.status_code == 400
        assert res.json() == {"kind": "invalid_input", "message": "Rating must be between 1 and 5"}
    res = client.post("/ratings", json={"store_id": store["id"], "rating": 4.5}, headers=auth_header(user))
    assert res.status_code == 422


def test_rating_must_be_a_json_integer(client, admin, make_user):
    user = make_user()
    store = create_store_via_api(client, admin, make_user())
    for value in (True, "3", 4.0):
        res = client.post("/ratings", json={"store_id": store["id"], "rating": value}, headers=auth_header(user))
        assert res.status_code == 422, value
        assert res.json()["kind"] == "invalid_input"

    rating = client.post("/ratings", json={"store_id": store["id"], "rating": 2}, headers=auth_header(user)).json()
    for value in (True, "3", 4.0):
        res = client.put(f"/ratings/{rating['id']}", json={"rating": value}, headers=auth_header(user))
        assert res.status_code == 422, value
    assert client.get(f"/ratings/store/{store['id']}", headers=auth_header(user)).json()["rating"] == 2


def test_rating_unknown_or_malformed_store(client, make_user):
    user = make_user()
    res = client.post("/ratings", json={"store_id": "5f1d7f1b2c3a4b5c6d7e8f90", "rating": 3}, headers=auth_header(user))
    assert res.status_code == 404
    res = client.post("/ratings", json={"store_id": "nope", "rating": 3}, headers=auth_header(user))
    assert res.status_code == 400


def test_update_and_delete_require_author(client, admin, make_user):
    author, other = make_user(), make_user()
    store = create_store_via_api(client, admin, make_user())
    rating = client.post("/ratings", json={"store_id": store["id"], "rating": 3}, headers=auth_header(author)).json()

    res = client.put(f"/ratings/{rating['id']}", json={"rating": 1}, headers=auth_header(other))
    assert res.status_code == 403
    res = client.delete(f"/ratings/{rating['id']}", headers=auth_header(other))
    assert res.status_code == 403

    res = client.put(f"/ratings/{rating['id']}", json={"rating": 1}, headers=auth_header(author))
    assert res.status_code == 200
    assert res.json()["rating"] == 1
    assert client.get(f"/stores/{store['id']}").json()["average_rating"] == 1.0


def test_my_ratings(client, admin, make_user):
    user = make_user()
    store = create_store_via_api(client, admin, make_user())
    client.post("/ratings", json={"store_id": store["id"], "rating": 4}, headers=auth_header(user))

    res = client.get("/ratings/user", headers=auth_header(user))

    assert res.status_code == 200
    [rating] = res.json()
    assert rating["store"] == {"id": store["id"], "name": "Store 1", "address": "1 High Street", "average_rating": 4.0}


def test_store_ratings_visible_to_owner_and_admin(client, db, admin, make_user):
    owner, rater = make_user(), make_user()
    store = create_store_via_api(client, admin, owner)
    client.post("/ratings", json={"store_id": store["id"], "rating": 4}, headers=auth_header(rater))

    promoted = db["user"].find_one({"_id": owner["_id"]})
    res = client.get(f"/stores/{store['id']}/ratings", headers=auth_header(promoted))
    assert res.status_code == 200
    assert res.json()[0]["user"]["email"] == rater["email"]
    assert client.get(f"/stores/{store['id']}/ratings", headers=auth_header(admin)).status_code == 200
    assert client.get(f"/stores/{store['id']}/ratings", headers=auth_header(rater)).status_code == 403

    res = client.get(f"/stores/owner/{owner['_id']}", headers=auth_header(promoted))
    assert res.json()["id"] == store["id"]


def test_delete_store_cascades(client, db, admin, make_user):
    store = create_store_via_api(client, admin, make_user())
    raters = [make_user() for _ in range(3)]
    for r in raters:
        client.post("/ratings", json={"store_id": store["id"], "rating": 5}, headers=auth_header(r))

    res = client.delete(f"/stores/{store['id']}", headers=auth_header(admin))

    assert res.status_code == 200
    assert db["rating"].count_documents({}) == 0
    assert client.get(f"/stores/{store['id']}").status_code == 404
    for r in raters:
        assert client.get(f"/ratings/store/{store['id']}", headers=auth_header(r)).status_code == 404


def test_duplicate_store_email(client, admin, make_user):
    create_store_via_api(client, admin, make_user())
    res = client.post(
        "/stores",
        json={"name": "Copy", "email": "shop1@example.com", "address": "2 High Street", "owner_id": str(make_user()["_id"])},
        headers=auth_header(admin),
    )
    assert res.status_code == 409


def test_admin_user_management(client, db, admin, make_user):
    res = client.post(
        "/users",
        json={"name": "Olive Owner", "email": "olive@example.com", "password": PASSWORD, "address": "3 Oak Lane", "role": "store_owner"},
        headers=auth_header(admin),
    )
    assert res.status_code == 201
    olive = res.json()

    res = client.get("/users", params={"role": "store_owner"}, headers=auth_header(admin))
    assert [u["email"] for u in res.json()] == ["olive@example.com"]

    res = client.put(f"/users/{olive['id']}", json={"address": "4 Oak Lane"}, headers=auth_header(admin))
    assert res.json()["address"] == "4 Oak Lane"

    stats = client.get("/users/dashboard/stats", headers=auth_header(admin)).json()
    assert stats == {"total_users": 2, "total_stores": 0, "total_ratings": 0}

    assert client.delete(f"/users/{olive['id']}", headers=auth_header(admin)).status_code == 200
    assert client.get(f"/users/{olive['id']}", headers=auth_header(admin)).status_code == 404


def test_update_password_endpoint(client, make_user):
    user = make_user()
    res = client.put(
        "/auth/password",
        json={"old_password": PASSWORD, "new_password": "Fresh@Pass1"},
        headers=auth_header(user),
    )
    assert res.status_code == 200
    res = client.post("/auth/login", json={"email": user["email"], "password": "Fresh@Pass1"})
    assert res.status_code == 200


def test_recompute_endpoint(client, db, admin, make_user):
    store = create_store_via_api(client, admin, make_user())
    client.post("/ratings", json={"store_id": store["id"], "rating": 2}, headers=auth_header(make_user()))
    db["store"].update_many({}, {"$set": {"average_rating": 0.0, "total_ratings": 0}})

    res = client.post("/stores/recompute", headers=auth_header(admin))

    assert res.json() == {"stores": 1, "orphaned_ratings_removed": 0}
    assert client.get(f"/stores/{store['id']}").json()["average_rating"] == 2.0


def test_deleted_user_token_is_rejected(client, db, make_user):
    user = make_user()
    db["user"].delete_one({"_id": user["_id"]})
    assert client.get("/auth/me", headers=auth_header(user)).status_code == 401
