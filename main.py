import logging
import os
import re
from contextlib import asynccontextmanager
from typing import Callable, Dict, Iterable, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

import chats
import database
import lifecycle
from database import ensure_indexes, get_db, oid, serialize_doc, utcnow
from errors import FoodBridgeError, NotFoundError, PermissionDeniedError, ValidationError
from history import (
    ANONYMOUS_NGO,
    UNKNOWN_RESTAURANT,
    display_name,
    filter_by_status,
    ngo_stats,
    restaurant_stats,
    review_entry,
    review_stats,
    summarize,
    with_effective_status,
)
from schemas import ROLE_NGO, ROLE_RESTAURANT, ContactMessage, Location, User
from security import (
    Session,
    create_access_token,
    get_google_verifier,
    get_session,
    hash_password,
    purge_expired_revocations,
    require_role,
    revoke_session,
    verify_password,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
        purge_expired_revocations(database.db)
    yield


# App setup
app = FastAPI(title="Food Donation API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
api = APIRouter(prefix="/api")


# Error rendering
@app.exception_handler(FoodBridgeError)
async def food_bridge_error_handler(request: Request, exc: FoodBridgeError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail, "detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = {}
    for err in exc.errors():
        field = str(err["loc"][-1]) if err.get("loc") else "body"
        errors.setdefault(field, err.get("msg", "Invalid value"))
    return JSONResponse(status_code=422, content={"success": False, "message": "Invalid request", "errors": errors})


# Pydantic models
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=2)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None
    location: Optional[Location] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class GoogleAuthRequest(BaseModel):
    credential: str
    role: str = ROLE_NGO


class LocationUpdateRequest(BaseModel):
    userId: Optional[str] = None
    location: Location
    phone: Optional[str] = None


class DonationCreateRequest(BaseModel):
    foodType: str = ""
    quantity: str = ""
    expiryTime: Optional[str] = None
    pickupLocation: str = ""
    preferredOption: str = "NGO Pickup"


class RatingRequest(BaseModel):
    rating: Optional[int] = None
    review: Optional[str] = None


class MessageRequest(BaseModel):
    message: str = ""


class ContactRequest(BaseModel):
    name: str = ""
    email: str = ""
    message: str = ""


# Utilities

PUBLIC_USER_FIELDS = ("name", "email", "role", "phone", "location", "avatar")


def serialize_user(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return None
    out = {"_id": str(doc["_id"]), "id": str(doc["_id"])}
    for field in PUBLIC_USER_FIELDS:
        out[field] = serialize_doc({field: doc.get(field)})[field]
    return out


def _users_by_id(db, ids: Iterable) -> Dict:
    wanted = list({i for i in ids if i is not None})
    if not wanted:
        return {}
    return {u["_id"]: u for u in db["user"].find({"_id": {"$in": wanted}})}


def present_donations(db, donations: Iterable[dict]) -> List[dict]:
    donations = with_effective_status(donations)
    users = _users_by_id(db, [d.get(f) for d in donations for f in ("restaurant", "requestedBy")])
    out = []
    for d in donations:
        doc = serialize_doc(d)
        doc["restaurant"] = serialize_user(users.get(d.get("restaurant")))
        doc["requestedBy"] = serialize_user(users.get(d.get("requestedBy")))
        doc["restaurantName"] = display_name(doc["restaurant"], UNKNOWN_RESTAURANT)
        doc["requesterName"] = display_name(doc["requestedBy"], ANONYMOUS_NGO) if d.get("requestedBy") else None
        out.append(doc)
    return out


def present_chats(db, chat_list: Iterable[dict], session: Session) -> List[dict]:
    chat_list = list(chat_list)
    users = _users_by_id(db, [c.get(f) for c in chat_list for f in ("restaurant", "ngo")])
    out = []
    for c in chat_list:
        doc = serialize_doc(c)
        doc.setdefault("messages", [])
        doc["restaurant"] = serialize_user(users.get(c.get("restaurant")))
        doc["ngo"] = serialize_user(users.get(c.get("ngo")))
        doc["unreadCount"] = chats.unread_count(c, session.user_id, session.role)
        out.append(doc)
    return out


def _auth_response(user: dict, **extra) -> dict:
    body = {"success": True, "token": create_access_token(user), "user": serialize_user(user)}
    body.update(extra)
    return body


# Routes
@app.get("/")
def root():
    return {"message": "Food Donation API"}


@app.get("/test")
def test_database():
    try:
        collections = get_db().list_collection_names()
        return {"backend": "ok", "database": "ok", "collections": collections}
    except Exception as e:
        return {"backend": "ok", "database": f"error: {str(e)[:80]}"}


# Auth
def _register(db, payload: RegisterRequest, role: str) -> dict:
    if db["user"].find_one({"email": payload.email}):
        raise HTTPException(400, detail="Email already registered")
    user = User(
        name=payload.name,
        email=payload.email,
        role=role,
        password_hash=hash_password(payload.password),
        phone=payload.phone,
        location=payload.location,
        createdAt=utcnow(),
    )
    doc = user.model_dump()
    doc["_id"] = db["user"].insert_one(doc).inserted_id
    logger.info("Registered %s account %s", role, doc["_id"])
    return doc


def _login(db, payload: LoginRequest, role: str) -> dict:
    user = db["user"].find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("password_hash")):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if user.get("role") != role:
        raise PermissionDeniedError("This account is not registered as %s" % ("an NGO" if role == ROLE_NGO else "a restaurant"))
    logger.info("User %s logged in", user["_id"])
    return _auth_response(user)


@api.post("/auth/register-ngo", status_code=201)
def register_ngo(payload: RegisterRequest, db=Depends(get_db)):
    user = _register(db, payload, ROLE_NGO)
    return _auth_response(user, message="NGO registered successfully")


@api.post("/auth/register-restaurant", status_code=201)
def register_restaurant(payload: RegisterRequest, db=Depends(get_db)):
    user = _register(db, payload, ROLE_RESTAURANT)
    return _auth_response(user, message="Restaurant registered successfully")


@api.post("/auth/login-ngo")
def login_ngo(payload: LoginRequest, db=Depends(get_db)):
    return _login(db, payload, ROLE_NGO)


@api.post("/auth/login-restaurant")
def login_restaurant(payload: LoginRequest, db=Depends(get_db)):
    return _login(db, payload, ROLE_RESTAURANT)


@api.post("/auth/google-auth")
def google_auth(payload: GoogleAuthRequest, db=Depends(get_db),
                verify: Callable[[str], dict] = Depends(get_google_verifier)):
    if payload.role not in (ROLE_NGO, ROLE_RESTAURANT):
        raise HTTPException(400, detail="Role must be ngo or restaurant")
    claims = verify(payload.credential)
    user = db["user"].find_one({"googleId": claims["sub"]}) or db["user"].find_one({"email": claims["email"]})
    if user:
        if user.get("role") != payload.role:
            raise PermissionDeniedError("This account is registered as %s" % user.get("role"))
        if not user.get("googleId"):
            db["user"].update_one({"_id": user["_id"]}, {"$set": {"googleId": claims["sub"]}})
            user["googleId"] = claims["sub"]
    else:
        new_user = User(
            name=claims.get("name") or claims["email"].split("@")[0],
            email=claims["email"],
            role=payload.role,
            avatar=claims.get("picture"),
            googleId=claims["sub"],
            createdAt=utcnow(),
        )
        user = new_user.model_dump()
        user["_id"] = db["user"].insert_one(user).inserted_id
        logger.info("Created %s account %s through Google sign-in", payload.role, user["_id"])
    return _auth_response(user, needsLocation=not user.get("location"))


@api.post("/auth/update-location")
def update_location(payload: LocationUpdateRequest, session: Session = Depends(get_session), db=Depends(get_db)):
    if payload.userId and payload.userId != str(session.user_id):
        raise PermissionDeniedError("You can only update your own location")
    changes = {"location": payload.location.model_dump()}
    if payload.phone:
        changes["phone"] = payload.phone
    db["user"].update_one({"_id": session.user_id}, {"$set": changes})
    user = db["user"].find_one({"_id": session.user_id})
    return {"success": True, "message": "Location updated", "user": serialize_user(user)}


@api.post("/auth/logout")
def logout(session: Session = Depends(get_session), db=Depends(get_db)):
    purge_expired_revocations(db)
    revoke_session(db, session)
    return {"success": True, "message": "Logged out"}


@api.get("/auth/me")
def me(session: Session = Depends(get_session), db=Depends(get_db)):
    return {"success": True, "user": serialize_user(db["user"].find_one({"_id": session.user_id}))}


@api.get("/auth/ngos")
def list_ngos(session: Session = Depends(get_session), db=Depends(get_db)):
    return [serialize_user(u) for u in db["user"].find({"role": ROLE_NGO}).sort("name", 1)]


@api.get("/auth/restaurants")
def list_restaurants(session: Session = Depends(get_session), db=Depends(get_db)):
    return [serialize_user(u) for u in db["user"].find({"role": ROLE_RESTAURANT}).sort("name", 1)]


# Donations
@api.post("/donations/create", status_code=201)
def create_donation(payload: DonationCreateRequest, session: Session = Depends(require_role(ROLE_RESTAURANT)),
                    db=Depends(get_db)):
    donation = lifecycle.create_donation(db, session, payload.model_dump())
    return {"success": True, "message": "Donation added successfully", "donation": present_donations(db, [donation])[0]}


@api.get("/donations/available")
def available_donations(session: Session = Depends(get_session), db=Depends(get_db)):
    return {"success": True, "donations": present_donations(db, lifecycle.available_donations(db))}


@api.get("/donations/my-requests")
def my_requests(session: Session = Depends(require_role(ROLE_NGO)), db=Depends(get_db)):
    return {"success": True, "donations": present_donations(db, lifecycle.donations_requested_by(db, session.user_id))}


@api.get("/donations/requests")
def restaurant_requests(session: Session = Depends(require_role(ROLE_RESTAURANT)), db=Depends(get_db)):
    return {"success": True, "donations": present_donations(db, lifecycle.donations_of_restaurant(db, session.user_id))}


@api.post("/donations/request/{donation_id}")
def request_donation(donation_id: str, session: Session = Depends(get_session), db=Depends(get_db)):
    donation = lifecycle.request_donation(db, session, donation_id)
    return {"success": True, "message": "Request sent successfully", "donation": present_donations(db, [donation])[0]}


@api.post("/donations/accept/{donation_id}")
def accept_donation(donation_id: str, session: Session = Depends(get_session), db=Depends(get_db)):
    donation = lifecycle.accept_donation(db, session, donation_id)
    return {"success": True, "message": "Request accepted", "donation": present_donations(db, [donation])[0]}


@api.post("/donations/reject/{donation_id}")
def reject_donation(donation_id: str, session: Session = Depends(get_session), db=Depends(get_db)):
    donation = lifecycle.reject_donation(db, session, donation_id)
    return {"success": True, "message": "Request rejected", "donation": present_donations(db, [donation])[0]}


@api.post("/donations/complete/{donation_id}")
def complete_donation(donation_id: str, payload: Optional[RatingRequest] = Body(None),
                      session: Session = Depends(get_session), db=Depends(get_db)):
    payload = payload or RatingRequest()
    donation = lifecycle.complete_donation(db, session, donation_id, payload.rating, payload.review)
    return {"success": True, "message": "Donation marked as completed", "donation": present_donations(db, [donation])[0]}


@api.post("/donations/{donation_id}/rate")
def rate_donation(donation_id: str, payload: RatingRequest, session: Session = Depends(get_session),
                  db=Depends(get_db)):
    donation = lifecycle.rate_donation(db, session, donation_id, payload.rating, payload.review)
    return {"success": True, "message": "Thank you for your feedback", "donation": present_donations(db, [donation])[0]}


@api.get("/donations/history/restaurant")
def restaurant_history(status: Optional[str] = None, session: Session = Depends(require_role(ROLE_RESTAURANT)),
                       db=Depends(get_db)):
    donations = lifecycle.donations_of_restaurant(db, session.user_id)
    stats = restaurant_stats(summarize(donations))
    return {"success": True, "donations": present_donations(db, filter_by_status(donations, status)), "stats": stats}


@api.get("/donations/history/ngo")
def ngo_history(status: Optional[str] = None, session: Session = Depends(require_role(ROLE_NGO)),
                db=Depends(get_db)):
    donations = lifecycle.donations_requested_by(db, session.user_id)
    stats = ngo_stats(summarize(donations))
    return {"success": True, "donations": present_donations(db, filter_by_status(donations, status)), "stats": stats}


@api.get("/donations/restaurant/{restaurant_id}/reviews")
def restaurant_reviews(restaurant_id: str, session: Session = Depends(get_session), db=Depends(get_db)):
    restaurant = db["user"].find_one({"_id": oid(restaurant_id), "role": ROLE_RESTAURANT})
    if not restaurant:
        raise NotFoundError("Restaurant not found")
    rated = present_donations(db, lifecycle.rated_donations_of_restaurant(db, restaurant["_id"]))
    return {
        "success": True,
        "restaurant": serialize_user(restaurant),
        "reviews": [review_entry(d) for d in rated],
        "stats": review_stats(rated),
    }


# Chats
@api.get("/chats/my-chats")
def my_chats(session: Session = Depends(get_session), db=Depends(get_db)):
    found = chats.chats_for(db, session)
    return {
        "success": True,
        "chats": present_chats(db, found, session),
        "totalUnread": chats.total_unread(found, session.user_id, session.role),
    }


@api.get("/chats/{chat_id}")
def get_chat(chat_id: str, session: Session = Depends(get_session), db=Depends(get_db)):
    chat = chats.load_chat(db, session, chat_id)
    return {"success": True, "chat": present_chats(db, [chat], session)[0]}


@api.post("/chats/{chat_id}/message")
def send_message(chat_id: str, payload: MessageRequest, session: Session = Depends(get_session),
                 db=Depends(get_db)):
    chat = chats.send_message(db, session, chat_id, payload.message)
    return {"success": True, "chat": present_chats(db, [chat], session)[0]}


@api.post("/chats/{chat_id}/mark-read")
def mark_chat_read(chat_id: str, session: Session = Depends(get_session), db=Depends(get_db)):
    chat = chats.mark_read(db, session, chat_id)
    return {"success": True, "chat": present_chats(db, [chat], session)[0]}


# Contact
CONTACT_NAME_PATTERN = re.compile(r"^[A-Za-z\s]+$")
CONTACT_EMAIL_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9._%+-]*@gmail\.com$")
MIN_CONTACT_MESSAGE_LENGTH = 10


def validate_contact(payload: ContactRequest) -> dict:
    name, email, message = payload.name.strip(), payload.email.strip(), payload.message.strip()
    errors = {}
    if not CONTACT_NAME_PATTERN.match(name):
        errors["name"] = "Name should contain only alphabets and spaces."
    if not CONTACT_EMAIL_PATTERN.match(email):
        errors["email"] = "Enter a valid Gmail address (e.g., user@gmail.com)."
    if len(message) < MIN_CONTACT_MESSAGE_LENGTH:
        errors["message"] = "Message should be at least %d characters long." % MIN_CONTACT_MESSAGE_LENGTH
    if errors:
        raise ValidationError("Please correct the highlighted errors", errors)
    return {"name": name, "email": email, "message": message}


@api.post("/contact", status_code=201)
def contact(payload: ContactRequest, db=Depends(get_db)):
    doc = ContactMessage(createdAt=utcnow(), **validate_contact(payload)).model_dump()
    db["contact_message"].insert_one(doc)
    logger.info("Contact message received from %s", doc["email"])
    return {"success": True, "message": "Message sent successfully"}


app.include_router(api)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 5001))
    uvicorn.run(app, host="0.0.0.0", port=port)
