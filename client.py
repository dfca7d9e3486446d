"""
Python client for the food donation API.

`FoodBridgeClient` holds an explicit `Session` (set by a login call, cleared
by `logout`) and attaches its bearer token to every request. Writes are
never retried: any failure raises a `FoodBridgeError` carrying the server's
message, and the caller's input is left as it was so it can be resubmitted.
`ChatPoller` keeps a chat list fresh on a fixed interval until stopped.
"""
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel

import chats
import lifecycle
from errors import GENERIC_MESSAGE, AuthError, FoodBridgeError, NetworkError, ValidationError, error_for_status

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:5001/api"


class Session(BaseModel):
    token: str
    user: Dict[str, Any]

    @property
    def user_id(self) -> str:
        return self.user.get("id") or self.user.get("_id")

    @property
    def role(self) -> str:
        return self.user.get("role")


class FoodBridgeClient:
    def __init__(self, base_url: str = DEFAULT_BASE_URL, http: Optional[httpx.Client] = None,
                 timeout: float = 10.0):
        self._http = http or httpx.Client(base_url=base_url, timeout=timeout)
        self.session: Optional[Session] = None

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # Transport

    def _request(self, method: str, path: str, json: Any = None, params: Optional[dict] = None,
                 auth: bool = True) -> Any:
        headers = {}
        if auth:
            if self.session is None:
                raise AuthError("Please login first")
            headers["Authorization"] = "Bearer %s" % self.session.token
        try:
            response = self._http.request(method, path, json=json, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise NetworkError("Could not reach the server: %s" % exc)

        try:
            body = response.json()
        except ValueError:
            body = None
        if response.is_success:
            return body

        message, errors = GENERIC_MESSAGE, None
        if isinstance(body, dict):
            message = body.get("message") or body.get("detail") or GENERIC_MESSAGE
            errors = body.get("errors")
        if not isinstance(message, str):
            message = GENERIC_MESSAGE
        err = error_for_status(response.status_code, message, errors)
        if isinstance(err, AuthError) and auth:
            # Token rejected: the session is over.
            self.session = None
        raise err

    # Session

    def _start_session(self, body: dict) -> Session:
        self.session = Session(token=body["token"], user=body["user"])
        logger.info("Logged in as %s (%s)", self.session.user.get("email"), self.session.role)
        return self.session

    def login_ngo(self, email: str, password: str) -> Session:
        body = self._request("POST", "/auth/login-ngo", json={"email": email, "password": password}, auth=False)
        return self._start_session(body)

    def login_restaurant(self, email: str, password: str) -> Session:
        body = self._request("POST", "/auth/login-restaurant", json={"email": email, "password": password}, auth=False)
        return self._start_session(body)

    def register_ngo(self, **fields) -> Session:
        return self._start_session(self._request("POST", "/auth/register-ngo", json=fields, auth=False))

    def register_restaurant(self, **fields) -> Session:
        return self._start_session(self._request("POST", "/auth/register-restaurant", json=fields, auth=False))

    def logout(self) -> None:
        if self.session is None:
            return
        try:
            self._request("POST", "/auth/logout")
        finally:
            self.session = None

    def update_location(self, latitude: float, longitude: float, address: Optional[str] = None,
                        phone: Optional[str] = None) -> dict:
        payload = {"location": {"latitude": latitude, "longitude": longitude, "address": address}}
        if phone:
            payload["phone"] = phone
        user = self._request("POST", "/auth/update-location", json=payload)["user"]
        self.session = Session(token=self.session.token, user=user)
        return user

    # Donations

    def create_donation(self, foodType: str, quantity: str, expiryTime, pickupLocation: str,
                        preferredOption: str = "NGO Pickup") -> dict:
        form = {
            "foodType": foodType,
            "quantity": quantity,
            "expiryTime": expiryTime,
            "pickupLocation": pickupLocation,
            "preferredOption": preferredOption,
        }
        cleaned = lifecycle.validate_donation_input(form)
        payload = dict(cleaned, expiryTime=cleaned["expiryTime"].isoformat() + "Z")
        return self._request("POST", "/donations/create", json=payload)["donation"]

    def available_donations(self) -> List[dict]:
        return self._request("GET", "/donations/available")["donations"]

    def my_requests(self) -> List[dict]:
        return self._request("GET", "/donations/my-requests")["donations"]

    def restaurant_requests(self) -> List[dict]:
        return self._request("GET", "/donations/requests")["donations"]

    def request_donation(self, donation_id: str) -> dict:
        return self._request("POST", "/donations/request/%s" % donation_id)["donation"]

    def accept_donation(self, donation_id: str) -> dict:
        return self._request("POST", "/donations/accept/%s" % donation_id)["donation"]

    def reject_donation(self, donation_id: str) -> dict:
        return self._request("POST", "/donations/reject/%s" % donation_id)["donation"]

    def complete_donation(self, donation_id: str, rating: Optional[int] = None,
                          review: Optional[str] = None) -> dict:
        draft = CompletionDraft(donation_id, rating, review)
        return draft.submit(self)

    def rate_donation(self, donation_id: str, rating: int, review: Optional[str] = None) -> dict:
        lifecycle.validate_rating(rating, review)
        body = self._request("POST", "/donations/%s/rate" % donation_id, json={"rating": rating, "review": review})
        return body["donation"]

    def history(self, status: Optional[str] = None) -> dict:
        path = "/donations/history/restaurant" if self.session and self.session.role == "restaurant" else "/donations/history/ngo"
        params = {"status": status} if status else None
        return self._request("GET", path, params=params)

    def restaurant_reviews(self, restaurant_id: str) -> dict:
        return self._request("GET", "/donations/restaurant/%s/reviews" % restaurant_id)

    def ngos(self) -> List[dict]:
        return self._request("GET", "/auth/ngos")

    def restaurants(self) -> List[dict]:
        return self._request("GET", "/auth/restaurants")

    # Chats

    def my_chats(self) -> List[dict]:
        return self._request("GET", "/chats/my-chats")["chats"]

    def open_chat(self, chat_id: str) -> dict:
        """Fetch a conversation and mark it read for the current user."""
        self._request("GET", "/chats/%s" % chat_id)
        return self.mark_read(chat_id)

    def send_message(self, chat_id: str, text: str) -> dict:
        if not text or not text.strip():
            raise ValidationError("Message cannot be empty", {"message": "Message cannot be empty"})
        return self._request("POST", "/chats/%s/message" % chat_id, json={"message": text.strip()})["chat"]

    def mark_read(self, chat_id: str) -> dict:
        return self._request("POST", "/chats/%s/mark-read" % chat_id)["chat"]

    def unread_total(self, chat_list: List[dict]) -> int:
        """Badge count for `chat_list`, computed from the current session."""
        if self.session is None:
            raise AuthError("Please login first")
        parsed = [_parse_chat(c) for c in chat_list]
        return chats.total_unread(parsed, self.session.user_id, self.session.role)


class CompletionDraft:
    """Completion of a donation together with its optional rating.

    Sent as a single request. If it fails the draft keeps the typed rating
    and review, and `submit` can simply be called again.
    """

    def __init__(self, donation_id: str, rating: Optional[int] = None, review: Optional[str] = None):
        self.donation_id = donation_id
        self.rating = rating
        self.review = review
        self.result: Optional[dict] = None
        self.last_error: Optional[FoodBridgeError] = None

    def submit(self, client: FoodBridgeClient) -> dict:
        lifecycle.validate_rating(self.rating, self.review)
        payload = None
        if self.rating is not None:
            payload = {"rating": self.rating, "review": self.review}
        try:
            body = client._request("POST", "/donations/complete/%s" % self.donation_id, json=payload)
        except FoodBridgeError as exc:
            self.last_error = exc
            raise
        self.last_error = None
        self.result = body["donation"]
        return self.result


def _parse_chat(chat: dict) -> dict:
    parsed = dict(chat)
    for field in ("lastReadByRestaurant", "lastReadByNGO"):
        if parsed.get(field):
            parsed[field] = lifecycle.parse_timestamp(parsed[field])
    parsed["messages"] = [
        dict(m, timestamp=lifecycle.parse_timestamp(m["timestamp"])) for m in chat.get("messages") or []
    ]
    return parsed


class ChatPoller:
    """Re-fetch chats every `interval` seconds and hand them to `on_update`.

    Updates arrive in fetch order on the poller's own thread. Once `stop()`
    has returned, `on_update` is not called again. Failed fetches are logged
    and tried again on the next tick.
    """

    def __init__(self, fetch: Callable[[], List[dict]], on_update: Callable[[List[dict]], None],
                 interval: float = 5.0):
        self._fetch = fetch
        self._on_update = on_update
        self.interval = interval
        self._stopped = threading.Event()
        self._lock = threading.RLock()
        self._thread: Optional[threading.Thread] = None
        self.last_fetch: Optional[datetime] = None

    @classmethod
    def for_client(cls, client: FoodBridgeClient, on_update: Callable[[List[dict]], None],
                   interval: float = 5.0) -> "ChatPoller":
        return cls(client.my_chats, on_update, interval)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stopped.is_set()

    def start(self) -> "ChatPoller":
        if self._thread is not None:
            raise RuntimeError("ChatPoller already started")
        self._thread = threading.Thread(target=self._run, name="chat-poller", daemon=True)
        self._thread.start()
        return self

    def poll_once(self) -> bool:
        try:
            result = self._fetch()
        except FoodBridgeError as exc:
            logger.warning("Chat refresh failed: %s", exc.message)
            return False
        with self._lock:
            if self._stopped.is_set():
                return False
            self.last_fetch = datetime.now()
            self._on_update(result)
        return True

    def _run(self) -> None:
        while not self._stopped.is_set():
            self.poll_once()
            self._stopped.wait(self.interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            self._stopped.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def __enter__(self):
        return self.start()

    def __exit__(self, *exc):
        self.stop()
