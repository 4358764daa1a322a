import time
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings

TOKEN_MAX_AGE_HOURS = 12


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.csrf_secret, salt="budget-csrf")


def generate_csrf_token(scope: str = "api") -> str:
    return _serializer().dumps({"scope": scope, "ts": int(time.time())})


def validate_csrf_token(
    token: Optional[str], scope: str = "api", max_age_hours: int = TOKEN_MAX_AGE_HOURS
) -> bool:
    if not token:
        return False
    try:
        data = _serializer().loads(token, max_age=max_age_hours * 3600)
    except BadSignature:
        return False
    return isinstance(data, dict) and data.get("scope") == scope
