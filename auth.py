import secrets
from datetime import timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import requests
from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Cookie, Header, HTTPException

from config import GOOGLE_CALLBACK_URL, GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET
from database import create_document, get_collection, utcnow
from schemas import Session, User

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"

SESSION_COOKIE = "session"
STATE_COOKIE = "oauth_state"
SESSION_LIFETIME = timedelta(days=7)


class OAuthError(Exception):
    pass


# ----------------------
# Google OAuth 2.0
# ----------------------

def google_authorize_url(state: str) -> str:
    if not GOOGLE_CLIENT_ID:
        raise OAuthError("GOOGLE_CLIENT_ID not configured")
    params = {
        "client_id": GOOGLE_CLIENT_ID,
        "redirect_uri": GOOGLE_CALLBACK_URL,
        "response_type": "code",
        "scope": "openid email profile",
        "state": state,
        "prompt": "select_account",
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


def fetch_google_profile(code: str) -> Dict[str, Any]:
    try:
        token_resp = requests.post(
            GOOGLE_TOKEN_URL,
            data={
                "code": code,
                "client_id": GOOGLE_CLIENT_ID,
                "client_secret": GOOGLE_CLIENT_SECRET,
                "redirect_uri": GOOGLE_CALLBACK_URL,
                "grant_type": "authorization_code",
            },
            timeout=30,
        )
        token_resp.raise_for_status()
        access_token = token_resp.json()["access_token"]
        info_resp = requests.get(
            GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=30,
        )
        info_resp.raise_for_status()
        profile = info_resp.json()
    except (requests.RequestException, KeyError, ValueError) as e:
        raise OAuthError(f"Google sign-in failed: {e}") from e
    if not profile.get("sub") or not profile.get("email"):
        raise OAuthError("Google profile is missing sub or email")
    return profile


def upsert_google_user(profile: Dict[str, Any]) -> str:
    users = get_collection("user")
    now = utcnow()
    existing = users.find_one({"googleId": profile["sub"]})
    if existing:
        users.update_one(
            {"_id": existing["_id"]},
            {"$set": {
                "email": profile["email"],
                "displayName": profile.get("name") or existing.get("displayName", ""),
                "profilePicture": profile.get("picture"),
                "lastLoginAt": now,
            }},
        )
        return str(existing["_id"])
    user = User(
        google_id=profile["sub"],
        email=profile["email"],
        display_name=profile.get("name") or "",
        profile_picture=profile.get("picture"),
        created_at=now,
        last_login_at=now,
    )
    return create_document("user", user)


# ----------------------
# Sessions
# ----------------------

def create_session(user_id: str) -> str:
    token = secrets.token_urlsafe(32)
    create_document("session", Session(user_id=user_id, token=token, expires_at=utcnow() + SESSION_LIFETIME))
    return token


def delete_session(token: str) -> None:
    get_collection("session").delete_one({"token": token})


def _token_from_request(authorization: Optional[str], session: Optional[str]) -> Optional[str]:
    if authorization:
        if not authorization.lower().startswith("bearer "):
            raise HTTPException(status_code=401, detail="Invalid auth scheme")
        return authorization.split(" ", 1)[1].strip()
    return session


def user_for_token(token: str) -> Optional[Dict[str, Any]]:
    session_doc = get_collection("session").find_one({"token": token, "expiresAt": {"$gt": utcnow()}})
    if not session_doc:
        return None
    try:
        user = get_collection("user").find_one({"_id": ObjectId(session_doc["userId"])})
    except InvalidId:
        return None
    if user:
        user["_id"] = str(user["_id"])
    return user


def get_current_user(
    authorization: Optional[str] = Header(None),
    session: Optional[str] = Cookie(None),
) -> Dict[str, Any]:
    token = _token_from_request(authorization, session)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    user = user_for_token(token)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid or expired session")
    return user
