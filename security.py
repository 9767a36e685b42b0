from datetime import datetime, timedelta, timezone

import bcrypt
import jwt

from config import settings
from errors import Unauthenticated


def hash_password(password: str, rounds: int = None) -> str:
    """Salted one-way hash; the plaintext is never stored."""
    salt = bcrypt.gensalt(rounds=rounds or settings.BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


def create_access_token(user_id: str, expires_in: timedelta = None) -> str:
    now = datetime.now(timezone.utc)
    expires_in = expires_in or timedelta(days=settings.JWT_EXPIRE_DAYS)
    payload = {"id": user_id, "iat": now, "exp": now + expires_in}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> str:
    """Return the user id bound to a session credential."""
    try:
        payload = jwt.decode(
            token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM]
        )
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Session expired, please log in again")
    except jwt.InvalidTokenError:
        raise Unauthenticated("Not authorized to access this route - Invalid token")
    user_id = payload.get("id")
    if not user_id:
        raise Unauthenticated("Not authorized to access this route - Invalid token")
    return user_id
