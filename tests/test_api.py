from datetime import datetime

import pytest

from conftest import PASSWORD, auth, register, rice_form
from errors import AuthError
from security import get_google_verifier


def create_rice(client, restaurant, **overrides):
    resp = client.post("/api/donations/create", json=rice_form(**overrides), headers=restaurant["headers"])
    assert resp.status_code == 201, resp.text
    return resp.json()["donation"]


def post(client, path, who, json=None):
    return client.post(path, json=json, headers=who["headers"])


def test_root(client):
    assert client.get("/").json() == {"message": "Food Donation API"}


# Auth

def test_register_and_login(client, ngo):
    assert ngo["user"]["role"] == "ngo"
    assert "password_hash" not in ngo["user"]

    resp = client.post("/api/auth/login-ngo", json={"email": "hands@example.com", "password": PASSWORD})
    assert resp.status_code == 200
    body = resp.json()
    assert body["token"]
    assert body["user"]["id"] == ngo["user"]["id"]


def test_login_failures(client, ngo):
    resp = client.post("/api/auth/login-ngo", json={"email": "hands@example.com", "password": "wrong-one"})
    assert resp.status_code == 401
    assert resp.json()["message"] == "Invalid email or password"

    resp = client.post("/api/auth/login-restaurant", json={"email": "hands@example.com", "password": PASSWORD})
    assert resp.status_code == 403


def test_duplicate_email(client, ngo):
    resp = client.post("/api/auth/register-restaurant", json={
        "name": "Copycat", "email": "hands@example.com", "password": PASSWORD,
    })
    assert resp.status_code == 400
    assert resp.json()["message"] == "Email already registered"


def test_protected_routes_need_a_valid_token(client):
    resp = client.get("/api/donations/available")
    assert resp.status_code == 401
    assert resp.json()["success"] is False

    resp = client.get("/api/donations/available", headers=auth("not-a-token"))
    assert resp.status_code == 401


def test_logout_ends_the_session(client, ngo):
    assert client.get("/api/auth/me", headers=ngo["headers"]).status_code == 200
    assert post(client, "/api/auth/logout", ngo).status_code == 200
    resp = client.get("/api/auth/me", headers=ngo["headers"])
    assert resp.status_code == 401


def test_role_guards(client, restaurant, ngo):
    resp = post(client, "/api/donations/create", ngo, rice_form())
    assert resp.status_code == 403
    assert client.get("/api/donations/requests", headers=ngo["headers"]).status_code == 403
    assert client.get("/api/donations/my-requests", headers=restaurant["headers"]).status_code == 403


def test_directory_listings(client, restaurant, ngo):
    ngos = client.get("/api/auth/ngos", headers=restaurant["headers"]).json()
    assert [u["name"] for u in ngos] == ["Helping Hands"]
    assert ngos[0]["location"]["address"] == "MG Road"
    restaurants = client.get("/api/auth/restaurants", headers=ngo["headers"]).json()
    assert [u["name"] for u in restaurants] == ["Spice Villa"]


def test_google_sign_in_then_location(client, app):
    claims = {"sub": "google-123", "email": "food@ngo.org", "name": "Food Angels", "picture": "http://img/a.png"}
    seen = []

    def fake_verify(credential):
        seen.append(credential)
        if credential != "good-token":
            raise AuthError("Invalid Google credential")
        return claims

    app.dependency_overrides[get_google_verifier] = lambda: fake_verify

    resp = client.post("/api/auth/google-auth", json={"credential": "bad", "role": "ngo"})
    assert resp.status_code == 401

    resp = client.post("/api/auth/google-auth", json={"credential": "good-token", "role": "ngo"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["needsLocation"] is True
    assert body["user"]["avatar"] == "http://img/a.png"
    headers = auth(body["token"])

    resp = client.post("/api/auth/update-location", headers=headers, json={
        "userId": body["user"]["id"],
        "location": {"latitude": 18.52, "longitude": 73.85, "address": "Pune"},
        "phone": "9000000000",
    })
    assert resp.status_code == 200
    assert resp.json()["user"]["location"]["address"] == "Pune"

    again = client.post("/api/auth/google-auth", json={"credential": "good-token", "role": "ngo"}).json()
    assert again["needsLocation"] is False
    assert again["user"]["id"] == body["user"]["id"]

    wrong_role = client.post("/api/auth/google-auth", json={"credential": "good-token", "role": "restaurant"})
    assert wrong_role.status_code == 403
    assert seen[0] == "bad"


def test_update_location_for_someone_else_is_refused(client, restaurant, ngo):
    resp = post(client, "/api/auth/update-location", ngo, {
        "userId": restaurant["user"]["id"],
        "location": {"latitude": 1, "longitude": 2},
    })
    assert resp.status_code == 403


# Donations

def test_create_rejects_bad_fields(client, restaurant):
    resp = post(client, "/api/donations/create", restaurant, rice_form(foodType="R1ce123"))
    assert resp.status_code == 422
    body = resp.json()
    assert body["success"] is False
    assert list(body["errors"]) == ["foodType"]
    assert client.get("/api/donations/requests", headers=restaurant["headers"]).json()["donations"] == []


def test_donation_scenario_end_to_end(client, restaurant, ngo):
    donation = create_rice(client, restaurant)
    assert donation["status"] == "Available"
    assert donation["restaurant"]["name"] == "Spice Villa"
    _id = donation["_id"]

    available = client.get("/api/donations/available", headers=ngo["headers"]).json()["donations"]
    assert [d["_id"] for d in available] == [_id]

    requested = post(client, f"/api/donations/request/{_id}", ngo).json()["donation"]
    assert requested["status"] == "Requested"
    assert requested["requestedAt"]
    assert requested["requestedBy"]["name"] == "Helping Hands"
    assert client.get("/api/donations/available", headers=ngo["headers"]).json()["donations"] == []

    accepted = post(client, f"/api/donations/accept/{_id}", restaurant).json()["donation"]
    assert accepted["status"] == "Accepted"
    assert datetime.fromisoformat(accepted["requestedAt"]) <= datetime.fromisoformat(accepted["acceptedAt"])

    resp = post(client, f"/api/donations/complete/{_id}", ngo, {"rating": 4, "review": "Great!"})
    assert resp.status_code == 200, resp.text
    done = resp.json()["donation"]
    assert done["status"] == "Completed"
    assert done["rating"] == 4
    assert done["review"] == "Great!"
    assert done["completedAt"] and done["ratedAt"]

    mine = client.get("/api/donations/my-requests", headers=ngo["headers"]).json()["donations"]
    assert [d["status"] for d in mine] == ["Completed"]


def test_complete_from_wrong_state_is_a_conflict(client, restaurant, ngo):
    _id = create_rice(client, restaurant)["_id"]
    post(client, f"/api/donations/request/{_id}", ngo)
    resp = post(client, f"/api/donations/complete/{_id}", ngo, {"rating": 5})
    assert resp.status_code == 409
    assert resp.json()["message"]
    statuses = [d["status"] for d in client.get("/api/donations/my-requests", headers=ngo["headers"]).json()["donations"]]
    assert statuses == ["Requested"]


def test_reject_frees_the_donation(client, restaurant, ngo):
    _id = create_rice(client, restaurant)["_id"]
    post(client, f"/api/donations/request/{_id}", ngo)
    rejected = post(client, f"/api/donations/reject/{_id}", restaurant).json()["donation"]
    assert rejected["status"] == "Available"
    assert rejected["requestedBy"] is None
    assert len(rejected["rejections"]) == 1
    assert client.get("/api/donations/my-requests", headers=ngo["headers"]).json()["donations"] == []


def test_complete_without_rating_then_rate(client, restaurant, ngo):
    _id = create_rice(client, restaurant)["_id"]
    post(client, f"/api/donations/request/{_id}", ngo)
    post(client, f"/api/donations/accept/{_id}", restaurant)
    done = post(client, f"/api/donations/complete/{_id}", ngo).json()["donation"]
    assert done["status"] == "Completed"
    assert done["rating"] is None

    bad = post(client, f"/api/donations/{_id}/rate", ngo, {"rating": 9})
    assert bad.status_code == 422
    assert "rating" in bad.json()["errors"]

    rated = post(client, f"/api/donations/{_id}/rate", ngo, {"rating": 5, "review": "Lovely"}).json()["donation"]
    assert rated["rating"] == 5
    assert post(client, f"/api/donations/{_id}/rate", ngo, {"rating": 1}).status_code == 409


def test_invalid_id(client, ngo):
    resp = post(client, "/api/donations/request/not-an-id", ngo)
    assert resp.status_code == 400


def test_history_and_stats(client, restaurant, ngo):
    first = create_rice(client, restaurant)["_id"]
    create_rice(client, restaurant, foodType="Bread", quantity="3 plates")
    post(client, f"/api/donations/request/{first}", ngo)
    post(client, f"/api/donations/accept/{first}", restaurant)
    post(client, f"/api/donations/complete/{first}", ngo)

    body = client.get("/api/donations/history/restaurant", headers=restaurant["headers"]).json()
    assert len(body["donations"]) == 2
    stats = body["stats"]
    assert stats["totalDonations"] == 2
    assert stats["completedDonations"] == 1
    assert stats["pendingDonations"] == 0
    assert stats["totalQuantityDonated"] == 5
    assert stats["byStatus"]["Available"] == 1

    filtered = client.get("/api/donations/history/restaurant?status=available", headers=restaurant["headers"]).json()
    assert [d["foodType"] for d in filtered["donations"]] == ["Bread"]
    assert filtered["stats"]["totalDonations"] == 2

    ngo_body = client.get("/api/donations/history/ngo", headers=ngo["headers"]).json()
    assert ngo_body["stats"]["totalRequests"] == 1
    assert ngo_body["stats"]["totalQuantityReceived"] == 5
    assert ngo_body["donations"][0]["restaurantName"] == "Spice Villa"


def test_history_survives_a_deleted_restaurant(client, db, restaurant, ngo):
    _id = create_rice(client, restaurant)["_id"]
    post(client, f"/api/donations/request/{_id}", ngo)
    db["user"].delete_one({"email": "spice@example.com"})
    body = client.get("/api/donations/history/ngo", headers=ngo["headers"]).json()
    assert body["donations"][0]["restaurant"] is None
    assert body["donations"][0]["restaurantName"] == "Unknown"


def test_restaurant_reviews(client, restaurant, ngo):
    for rating in (5, 4):
        _id = create_rice(client, restaurant)["_id"]
        post(client, f"/api/donations/request/{_id}", ngo)
        post(client, f"/api/donations/accept/{_id}", restaurant)
        post(client, f"/api/donations/complete/{_id}", ngo, {"rating": rating, "review": "Nice"})
    create_rice(client, restaurant)

    body = client.get(f"/api/donations/restaurant/{restaurant['user']['id']}/reviews", headers=ngo["headers"]).json()
    assert body["stats"]["totalReviews"] == 2
    assert body["stats"]["averageRating"] == 4.5
    assert body["stats"]["ratingDistribution"]["5"] == 1
    assert {r["reviewer"] for r in body["reviews"]} == {"Helping Hands"}

    resp = client.get(f"/api/donations/restaurant/{ngo['user']['id']}/reviews", headers=ngo["headers"])
    assert resp.status_code == 404


# Chats

def test_chat_unread_flow(client, restaurant, ngo):
    _id = create_rice(client, restaurant)["_id"]
    post(client, f"/api/donations/request/{_id}", ngo)

    listing = client.get("/api/chats/my-chats", headers=restaurant["headers"]).json()
    assert len(listing["chats"]) == 1
    chat_id = listing["chats"][0]["_id"]
    assert listing["totalUnread"] == 0
    assert listing["chats"][0]["ngo"]["name"] == "Helping Hands"

    for text in ("Hello", "We can pick up at 6", "Is that ok?"):
        sent = post(client, f"/api/chats/{chat_id}/message", ngo, {"message": text}).json()
        assert sent["chat"]["messages"][-1]["message"] == text

    listing = client.get("/api/chats/my-chats", headers=restaurant["headers"]).json()
    assert listing["totalUnread"] == 3
    assert listing["chats"][0]["unreadCount"] == 3
    assert client.get("/api/chats/my-chats", headers=ngo["headers"]).json()["totalUnread"] == 0

    read = post(client, f"/api/chats/{chat_id}/mark-read", restaurant).json()["chat"]
    assert read["unreadCount"] == 0
    assert read["lastReadByRestaurant"]
    assert client.get("/api/chats/my-chats", headers=restaurant["headers"]).json()["totalUnread"] == 0

    blank = post(client, f"/api/chats/{chat_id}/message", restaurant, {"message": "   "})
    assert blank.status_code == 422


def test_badge_sums_over_chats(client, restaurant, ngo):
    other = register(client, "ngo", "Second Serve", "second@example.com")
    for who in (ngo, other):
        _id = create_rice(client, restaurant)["_id"]
        post(client, f"/api/donations/request/{_id}", who)

    chats = client.get("/api/chats/my-chats", headers=ngo["headers"]).json()["chats"]
    chat_id = chats[0]["_id"]
    for text in ("a", "b", "c"):
        post(client, f"/api/chats/{chat_id}/message", ngo, {"message": text})

    listing = client.get("/api/chats/my-chats", headers=restaurant["headers"]).json()
    assert sorted(c["unreadCount"] for c in listing["chats"]) == [0, 3]
    assert listing["totalUnread"] == 3


def test_chat_is_private_to_its_pair(client, restaurant, ngo):
    _id = create_rice(client, restaurant)["_id"]
    post(client, f"/api/donations/request/{_id}", ngo)
    chat_id = client.get("/api/chats/my-chats", headers=ngo["headers"]).json()["chats"][0]["_id"]

    outsider = register(client, "ngo", "Outsider", "out@example.com")
    assert client.get(f"/api/chats/{chat_id}", headers=outsider["headers"]).status_code == 403
    assert client.get(f"/api/chats/{chat_id}", headers=ngo["headers"]).status_code == 200


# Contact

def test_contact_message_is_stored(client, db):
    resp = client.post("/api/contact", json={
        "name": "Asha Rao",
        "email": "asha.rao@gmail.com",
        "message": "  We would like to volunteer on weekends.  ",
    })
    assert resp.status_code == 201, resp.text
    stored = db["contact_message"].find_one({"email": "asha.rao@gmail.com"})
    assert stored["message"] == "We would like to volunteer on weekends."
    assert stored["createdAt"] is not None


def test_contact_form_rules(client, db):
    resp = client.post("/api/contact", json={"name": "R2D2", "email": "bot@yahoo.com", "message": "hi there"})
    assert resp.status_code == 422
    assert set(resp.json()["errors"]) == {"name", "email", "message"}
    assert db["contact_message"].count_documents({}) == 0
