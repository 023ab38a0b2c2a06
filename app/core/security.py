from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

# Import the 'settings' instance from our config module
from config.settings import settings
from app.models.run import Operator

# Operator tokens are issued out of band (`convoy token <name>`).
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token", auto_error=True)


# --- JSON Web Token (JWT) Management ---

def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """
    Creates a new, signed JWT access token.
    """
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        # Use the default expiration time from our settings
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire})

    encoded_jwt = jwt.encode(
        to_encode,
        settings.SECRET_KEY,
        algorithm=settings.ALGORITHM
    )
    return encoded_jwt


def create_operator_token(name: str, expires_delta: timedelta | None = None) -> str:
    return create_access_token({"sub": name}, expires_delta)


# --- FastAPI Dependency ---

async def get_current_operator(token: str = Depends(oauth2_scheme)) -> Operator:
    """
    Decodes the bearer token and returns the operator it names.

    The gatekeeper for every run endpoint.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM]
        )
        name: str | None = payload.get("sub")
        if not name:
            raise credentials_exception

    except JWTError:
        # expired, bad signature, malformed
        raise credentials_exception

    return Operator(name=name)
