from contextlib import contextmanager
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

import scheduler
from models import PendingVerification, User, VerificationPurpose
from security import InvalidToken, issue_token, read_token
from services import (
    AuthenticationError,
    AuthService,
    ConflictError,
    InvalidRequestError,
    NotFoundError,
)


class RecordingMailer:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send_code(self, email: str, subject: str, code: str) -> None:
        self.sent.append((email, subject, code))

    @property
    def last_code(self) -> str:
        return self.sent[-1][2]


@pytest.fixture()
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture()
def auth(session, mailer) -> AuthService:
    return AuthService(session, mailer=mailer)


def _register(auth: AuthService, mailer: RecordingMailer, email="carol@example.com"):
    auth.start_registration(email, "s3cret-pass")
    return auth.verify_registration(email, mailer.last_code)


def test_registration_flow_creates_user(session, auth, mailer) -> None:
    auth.start_registration("Carol@Example.com", "s3cret-pass")

    assert session.scalars(select(User)).all() == []
    email, subject, code = mailer.sent[0]
    assert email == "carol@example.com"
    assert "Register code" in subject
    assert len(code) == 6 and code.isdigit()

    user = auth.verify_registration("carol@example.com", code)

    assert user.email == "carol@example.com"
    assert user.password_hash != "s3cret-pass"
    assert session.scalars(select(PendingVerification)).all() == []


def test_registration_rejects_existing_email(auth, mailer, alice) -> None:
    with pytest.raises(ConflictError):
        auth.start_registration(alice.email, "whatever1")
    assert mailer.sent == []


def test_wrong_code_keeps_pending_entry(session, auth) -> None:
    auth.start_registration("carol@example.com", "s3cret-pass")

    with pytest.raises(InvalidRequestError, match="Invalid verification code"):
        auth.verify_registration("carol@example.com", "000000x")
    assert session.scalars(select(PendingVerification)).one().email == "carol@example.com"


def test_repeated_wrong_codes_discard_pending_entry(session, auth, mailer) -> None:
    auth.start_registration("carol@example.com", "s3cret-pass")
    code = mailer.last_code

    for _ in range(4):
        with pytest.raises(InvalidRequestError, match="Invalid verification code"):
            auth.verify_registration("carol@example.com", "wrong")
    assert session.scalars(select(PendingVerification)).one().attempts == 4

    with pytest.raises(InvalidRequestError, match="Too many failed attempts"):
        auth.verify_registration("carol@example.com", "wrong")
    assert session.scalars(select(PendingVerification)).all() == []

    # the right code no longer works once the entry is gone
    with pytest.raises(InvalidRequestError, match="No pending verification"):
        auth.verify_registration("carol@example.com", code)


def test_new_code_replaces_previous_one(session, auth, mailer) -> None:
    auth.start_registration("carol@example.com", "s3cret-pass")
    first = mailer.last_code
    auth.start_registration("carol@example.com", "s3cret-pass")

    assert len(session.scalars(select(PendingVerification)).all()) == 1
    if first != mailer.last_code:
        with pytest.raises(InvalidRequestError):
            auth.verify_registration("carol@example.com", first)
    assert auth.verify_registration("carol@example.com", mailer.last_code)


def test_expired_code_is_removed(session, auth, mailer) -> None:
    auth.start_registration("carol@example.com", "s3cret-pass")
    pending = session.scalars(select(PendingVerification)).one()
    pending.expires_at = datetime.utcnow() - timedelta(seconds=1)
    session.commit()

    with pytest.raises(InvalidRequestError, match="expired"):
        auth.verify_registration("carol@example.com", mailer.last_code)
    assert session.scalars(select(PendingVerification)).all() == []


def test_verify_without_pending_entry(auth) -> None:
    with pytest.raises(InvalidRequestError, match="No pending verification"):
        auth.verify_registration("nobody@example.com", "123456")


def test_login_issues_readable_token(auth, mailer) -> None:
    user = _register(auth, mailer)

    logged_in, token = auth.login("CAROL@example.com", "s3cret-pass")

    assert logged_in.id == user.id
    current = read_token(token)
    assert current.id == user.id
    assert current.email == "carol@example.com"


def test_login_rejects_bad_credentials(auth, mailer) -> None:
    _register(auth, mailer)

    with pytest.raises(AuthenticationError):
        auth.login("carol@example.com", "wrong-pass")
    with pytest.raises(AuthenticationError):
        auth.login("nobody@example.com", "s3cret-pass")


def test_password_reset_flow(auth, mailer) -> None:
    _register(auth, mailer)

    auth.request_password_reset("carol@example.com")
    assert "Reset Password code" in mailer.sent[-1][1]
    auth.reset_password("carol@example.com", mailer.last_code, "n3w-password")

    with pytest.raises(AuthenticationError):
        auth.login("carol@example.com", "s3cret-pass")
    assert auth.login("carol@example.com", "n3w-password")[0].email == "carol@example.com"


def test_password_reset_for_unknown_email(auth) -> None:
    with pytest.raises(NotFoundError):
        auth.request_password_reset("nobody@example.com")


def test_purge_expired_drops_only_stale_entries(session, auth) -> None:
    now = datetime.utcnow()
    session.add_all(
        [
            PendingVerification(
                email="old@example.com",
                purpose=VerificationPurpose.register,
                code="111111",
                expires_at=now - timedelta(minutes=1),
            ),
            PendingVerification(
                email="new@example.com",
                purpose=VerificationPurpose.register,
                code="222222",
                expires_at=now + timedelta(minutes=4),
            ),
        ]
    )
    session.commit()

    assert auth.purge_expired(now=now) == 1
    remaining = session.scalars(select(PendingVerification)).all()
    assert [p.email for p in remaining] == ["new@example.com"]


def test_scheduler_job_purges_expired_codes(session, monkeypatch) -> None:
    session.add(
        PendingVerification(
            email="old@example.com",
            purpose=VerificationPurpose.reset_password,
            code="111111",
            expires_at=datetime.utcnow() - timedelta(hours=1),
        )
    )
    session.commit()

    @contextmanager
    def fake_scope():
        yield session

    monkeypatch.setattr(scheduler, "session_scope", fake_scope)

    assert scheduler.SchedulerManager()._run_job("test") == 1


def test_tampered_token_is_rejected() -> None:
    token = issue_token("abc", "carol@example.com")

    with pytest.raises(InvalidToken):
        read_token(token + "x")
