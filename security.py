from dataclasses import dataclass

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from passlib.context import CryptContext

from config import get_settings

pwd_context = CryptContext(schemes=["scrypt"], deprecated="auto", scrypt__rounds=14)


class InvalidToken(Exception):
    pass


@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: str


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.secret_key, salt="access-token")


def issue_token(user_id: str, email: str) -> str:
    return _serializer().dumps({"id": user_id, "email": email})


def read_token(token: str) -> CurrentUser:
    settings = get_settings()
    try:
        data = _serializer().loads(token, max_age=settings.token_max_age_minutes * 60)
    except SignatureExpired as exc:
        raise InvalidToken("Token expired") from exc
    except BadSignature as exc:
        raise InvalidToken("Bad token signature") from exc

    if not isinstance(data, dict) or not data.get("id") or not data.get("email"):
        raise InvalidToken("Malformed token payload")
    return CurrentUser(id=str(data["id"]), email=str(data["email"]))


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)
