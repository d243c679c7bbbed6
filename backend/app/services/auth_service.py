"""Authentication service - business logic for user authentication"""
import bcrypt
import logging
import re
import secrets
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.user import User
from app.core.metrics import login_attempts_counter
from app.db.helpers import utcnow, as_utc
from app.db.redis import set_session, get_session, delete_session
from app.db.session import SessionLocal

logger = logging.getLogger(__name__)

BCRYPT_ROUNDS = 12
RESET_TOKEN_TTL = timedelta(hours=1)

PASSWORD_RULES = [
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter"),
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter"),
    (re.compile(r"[0-9]"), "Password must contain at least one number"),
]


def hash_password(password: str) -> str:
    """Hash a password using bcrypt"""
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash"""
    if not password_hash or not password:
        return False
    return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))


def validate_password(password: str) -> None:
    """Enforce the password policy

    Raises:
        ValueError: With the first rule the password breaks
    """
    if len(password) < 8:
        raise ValueError("Password must be at least 8 characters long")
    for pattern, message in PASSWORD_RULES:
        if not pattern.search(password):
            raise ValueError(message)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def create_user(email: str, password: str, db: Session = None) -> User:
    """Create a new user.

    Args:
        email: User email (must be unique).
        password: Raw password, checked against the password policy.
        db: Database session (if None, creates its own).

    Raises:
        ValueError: "Email already registered" or a password policy message
    """
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        email = normalize_email(email)
        validate_password(password)

        if db.query(User.id).filter(User.email == email).first():
            raise ValueError("Email already registered")

        user = User(email=email, password_hash=hash_password(password))
        db.add(user)
        try:
            db.commit()
        except IntegrityError:
            # Concurrent registration won the unique constraint
            db.rollback()
            raise ValueError("Email already registered")
        db.refresh(user)
        return user
    finally:
        if should_close:
            db.close()


def authenticate_user(email: str, password: str, db: Session = None) -> Optional[User]:
    """Authenticate a user by email and password"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        user = db.query(User).filter(User.email == normalize_email(email)).first()
        if not user:
            return None
        if not verify_password(password, user.password_hash):
            return None
        return user
    finally:
        if should_close:
            db.close()


def get_user_by_id(user_id: int, db: Session) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def get_user_by_email(email: str, db: Session) -> Optional[User]:
    return db.query(User).filter(User.email == normalize_email(email)).first()


def create_session(user_id: int) -> str:
    """Create a new session for a user

    Returns:
        str: Session ID
    """
    session_id = secrets.token_urlsafe(32)
    set_session(session_id, user_id)
    return session_id


def register_user(email: str, password: str, db: Session) -> dict:
    """Registration flow: validate password, create user

    Raises:
        ValueError: If the password breaks the policy or the email is taken
    """
    user = create_user(email, password, db=db)
    logger.info(f"User registered: {user.email} (ID: {user.id})")
    return {"user": user.to_dict()}


def login_user(email: str, password: str, db: Session) -> dict:
    """Login flow: authenticate, create session, return user info

    Returns:
        dict: Login response with user info and session_id

    Raises:
        ValueError: If invalid credentials
    """
    user = authenticate_user(email, password, db=db)
    if not user:
        login_attempts_counter.labels(status="failure").inc()
        raise ValueError("Invalid email or password")

    session_id = create_session(user.id)
    login_attempts_counter.labels(status="success").inc()
    logger.info(f"User logged in: {user.email} (ID: {user.id})")

    return {"user": user.to_dict(), "session_id": session_id}


def logout_user(session_id: Optional[str]) -> dict:
    """Logout flow: delete session"""
    if session_id:
        delete_session(session_id)
        logger.info(f"User logged out (session: {session_id[:16]}...)")
    return {"message": "Logged out successfully"}


def get_current_user_from_session(session_id: Optional[str], db: Session) -> dict:
    """Get user from session, {"user": None} when anonymous"""
    if not session_id:
        return {"user": None}

    user_id = get_session(session_id)
    if not user_id:
        return {"user": None}

    user = get_user_by_id(user_id, db)
    if not user:
        return {"user": None}
    return {"user": user.to_dict()}


def initiate_password_reset(email: str, db: Session) -> Optional[str]:
    """Store a one-hour reset token on the user row

    Returns:
        str: Reset token if the user exists, None otherwise
    """
    user = get_user_by_email(email, db)
    if not user:
        return None

    reset_token = secrets.token_hex(32)
    user.reset_token = reset_token
    user.reset_token_expiry = utcnow() + RESET_TOKEN_TTL
    db.commit()
    return reset_token


def forgot_password_with_email(email: str, db: Session) -> dict:
    """Initiate password reset and send email

    Always reports success so the response does not reveal registered emails.
    """
    from app.services.email_service import send_password_reset_email

    reset_token = initiate_password_reset(email, db)
    if reset_token:
        try:
            send_password_reset_email(normalize_email(email), reset_token)
        except Exception:
            logger.warning(f"Failed to send password reset email to {email}", exc_info=True)

    return {"message": "If an account with that email exists, we have sent a password reset link."}


def reset_password_with_validation(token: str, new_password: str, db: Session) -> dict:
    """Validate password and complete reset

    Raises:
        ValueError: If the password breaks the policy or the token is invalid or expired
    """
    validate_password(new_password)

    user = db.query(User).filter(User.reset_token == token).first() if token else None
    if not user or not user.reset_token_expiry or as_utc(user.reset_token_expiry) <= utcnow():
        raise ValueError("Invalid or expired reset token")

    user.password_hash = hash_password(new_password)
    user.reset_token = None
    user.reset_token_expiry = None
    db.commit()

    logger.info(f"Password reset for user {user.id}")
    return {"message": "Password has been reset successfully"}
