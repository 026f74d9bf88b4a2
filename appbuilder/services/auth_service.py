# FILE: appbuilder/services/auth_service.py
import jwt
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, Optional

from appbuilder.core.config import JWT_SECRET, JWT_ALGORITHM, JWT_EXPIRATION_HOURS


def create_token(user_id: str, email: Optional[str] = None) -> str:
    payload = {
        "user_id": user_id,
        "sub": email or user_id,
        "exp": datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRATION_HOURS),
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    return jwt.decode(token.strip(), JWT_SECRET, algorithms=[JWT_ALGORITHM])
