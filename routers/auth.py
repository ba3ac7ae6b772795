import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from passlib.context import CryptContext
from pydantic import ValidationError as SchemaError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from config import get_settings
from db import SessionDep
from dependencies import ImageStoreDep
from errors import DependencyFailure
from models import User, utcnow
from schemas import AuthResult, UserCreate, UserPublic, UserSignIn
from storage import AVATAR, read_upload

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])

settings = get_settings()
serializer = URLSafeTimedSerializer(settings.secret_key, salt="annadan-auth")


pwd_context = CryptContext(
    schemes=["pbkdf2_sha256"],
    deprecated="auto",
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(user_id: int) -> str:
    """Sign {"user_id": ...} into a bearer token."""
    return serializer.dumps({"user_id": user_id})


def verify_access_token(token: str, max_age_seconds: Optional[int] = None) -> int:
    """
    Returns the user id inside a valid token.
    Raises 401 with "Token expired" or "Invalid token" otherwise.
    """
    if max_age_seconds is None:
        max_age_seconds = settings.token_max_age_seconds
    try:
        data = serializer.loads(token, max_age=max_age_seconds)
    except SignatureExpired:
        raise HTTPException(status_code=401, detail="Token expired")
    except BadSignature:
        raise HTTPException(status_code=401, detail="Invalid token")
    if not isinstance(data, dict) or "user_id" not in data:
        raise HTTPException(status_code=401, detail="Invalid token")
    return data["user_id"]


def extract_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[len("Bearer "):].strip() or None


def get_current_user(
    session: SessionDep,
    authorization: Optional[str] = Header(default=None),
) -> User:
    """
    Reads the bearer token, verifies it and loads the user.
    Raises 401 if missing / invalid / expired.
    """
    token = extract_token(authorization)
    if token is None:
        raise HTTPException(status_code=401, detail="Authentication required")

    user_id = verify_access_token(token)
    user = session.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="User not found for this token")
    return user


CurrentUserDep = Annotated[User, Depends(get_current_user)]


def get_optional_user(
    session: SessionDep,
    authorization: Optional[str] = Header(default=None),
) -> Optional[User]:
    """
    Like get_current_user, but returns None instead of raising 401.
    """
    token = extract_token(authorization)
    if token is None:
        return None
    try:
        user_id = verify_access_token(token)
    except HTTPException:
        return None
    return session.get(User, user_id)


OptionalUserDep = Annotated[Optional[User], Depends(get_optional_user)]


def find_user_by_email(session: Session, email: str) -> Optional[User]:
    """Look up a user by an email already normalized through EmailStr."""
    return session.exec(select(User).where(User.email == email)).first()


def form_text(form, key: str) -> Optional[str]:
    raw = form.get(key)
    if not isinstance(raw, str):
        return None
    return raw.strip() or None


@router.post("/auth", response_model=AuthResult)
async def signup(request: Request, session: SessionDep, images: ImageStoreDep):
    """
    Register a new user from multipart form data
    (name, email, password, optional profileImage) and return a token.
    """
    form = await request.form()

    name = form_text(form, "name")
    email = form_text(form, "email")
    password = form_text(form, "password")

    if not name or not email or not password:
        raise HTTPException(
            status_code=400, detail="Name, email, and password are required"
        )

    try:
        user_in = UserCreate(name=name, email=email, password=password)
    except SchemaError:
        raise HTTPException(status_code=400, detail="Invalid email address")

    if find_user_by_email(session, user_in.email) is not None:
        raise HTTPException(
            status_code=409, detail="User with this email already exists"
        )

    avatar_url = None
    image = await read_upload(form.get("profileImage"))
    if image is not None:
        try:
            avatar_url = images.upload_image(image, AVATAR)
        except DependencyFailure as exc:
            logger.warning("Avatar upload failed during signup: %s", exc)

    user = User(
        name=user_in.name,
        email=user_in.email,
        password_hash=hash_password(user_in.password),
        avatar_url=avatar_url,
        # email verification is not implemented yet
        is_verified=True,
    )
    session.add(user)
    try:
        session.commit()
    except IntegrityError:
        # the same email was registered between the lookup and the insert
        session.rollback()
        raise HTTPException(
            status_code=409, detail="User with this email already exists"
        )
    session.refresh(user)
    logger.info("User %s signed up", user.id)

    return AuthResult(
        message="User created successfully",
        user=UserPublic.model_validate(user),
        token=create_access_token(user.id),
    )


@router.get("/auth", response_model=AuthResult)
def signin(
    session: SessionDep,
    email: Optional[str] = None,
    password: Optional[str] = None,
):
    """
    Sign in with email + password passed as query parameters.
    """
    if not email or not password:
        raise HTTPException(status_code=400, detail="Email and password are required")

    try:
        credentials = UserSignIn(email=email, password=password)
    except SchemaError:
        raise HTTPException(status_code=401, detail="Invalid email or password")

    user = find_user_by_email(session, credentials.email)
    if user is None or not verify_password(credentials.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    if not user.is_verified:
        raise HTTPException(
            status_code=403, detail="Please verify your email before signing in"
        )

    try:
        user.last_login = utcnow()
        session.add(user)
        session.commit()
        session.refresh(user)
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Failed to update last login for user %s", user.id)

    return AuthResult(
        message="Sign in successful",
        user=UserPublic.model_validate(user),
        token=create_access_token(user.id),
    )
