# auth.py

from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from lab_scheduler.config import ALGORITHM, SECRET_KEY
from lab_scheduler.data_models import ADMIN_ROLE, USER_ROLE
from lab_scheduler.database import database
from lab_scheduler.models import users

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")


# Pydantic Models
class User(BaseModel):
    id: int
    username: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    role: str = USER_ROLE

class Token(BaseModel):
    access_token: str
    token_type: str

# User creation model
class UserCreate(BaseModel):
    username: str
    full_name: str
    email: str
    password: str

async def get_user(username: str):
    query = users.select().where(users.c.username == username)
    return await database.fetch_one(query)

def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=15)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt

# Function to create a user in the database
async def create_user(user: UserCreate, role: str = USER_ROLE):
    hashed_password = pwd_context.hash(user.password)
    query = users.insert().values(
        username=user.username,
        full_name=user.full_name,
        email=user.email.lower(),
        hashed_password=hashed_password,
        role=role
    )
    return await database.execute(query)


def _to_user(record) -> User:
    return User(
        id=record["id"],
        username=record["username"],
        email=record["email"],
        full_name=record["full_name"],
        role=record["role"] or USER_ROLE,
    )


# Helper function to decode token and fetch user, avoids code duplication
async def _decode_token_and_get_user(token: str) -> User:
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        username: str = payload.get("sub")
        if username is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    user = await get_user(username=username)
    if user is None:
        raise credentials_exception

    return _to_user(user)


# Used for API calls
async def get_current_active_user(token: str = Depends(oauth2_scheme)) -> User:
    return await _decode_token_and_get_user(token)

# Used by the WebSocket endpoint, where the token arrives as a query parameter
async def get_user_from_token(token: Optional[str]) -> User:
    return await _decode_token_and_get_user(token)

async def require_admin(current_user: User = Depends(get_current_active_user)) -> User:
    if current_user.role != ADMIN_ROLE:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")
    return current_user
