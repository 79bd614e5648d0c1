import time
import sqlite3
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import issue_session_token, require_session, session_user_id
from database.db import create_user, get_user_by_id, verify_user_credentials

router = APIRouter()


class Register(BaseModel):
    email: str
    password: str
    name: str
    role: Literal["professor", "student"] = "student"
    roll_no: str | None = None


class Login(BaseModel):
    email: str
    password: str


def _token_response(user: dict) -> dict:
    token, claims = issue_session_token(user["id"], role=user["role"])
    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "user_id": user["id"],
        "email": user["email"],
        "name": user["name"],
        "role": claims["role"],
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
    }


@router.post("/auth/register")
def register(payload: Register):
    email = payload.email.strip()
    password = payload.password.strip()
    name = payload.name.strip() or email.split("@")[0]
    roll_no = (payload.roll_no or "").strip() or None

    if not email or "@" not in email:
        raise HTTPException(status_code=400, detail="A valid email is required.")
    if len(password) < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters.")
    if payload.role == "student" and not roll_no:
        raise HTTPException(status_code=400, detail="Roll number is required for students.")

    try:
        user_id = create_user(email, password, name, payload.role, roll_no)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Email already registered.")

    user = get_user_by_id(user_id)
    return _token_response(user)


@router.post("/auth/login")
def login(payload: Login):
    email = payload.email.strip()
    password = payload.password.strip()

    if not email:
        raise HTTPException(status_code=400, detail="Email is required.")
    if not password:
        raise HTTPException(status_code=400, detail="Password is required.")

    user = verify_user_credentials(email, password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid email or password.")
    return _token_response(user)


@router.get("/auth/me")
def auth_me(session: dict = Depends(require_session)):
    user = get_user_by_id(session_user_id(session))
    if not user:
        raise HTTPException(status_code=401, detail="Account no longer exists.")
    return {
        "id": user["id"],
        "email": user["email"],
        "name": user["name"],
        "role": user["role"],
        "roll_no": user["roll_no"],
        "face_enrolled": bool(user["face_data_uri"]),
        "expires_at": session.get("exp"),
        "issued_at": session.get("iat"),
    }
