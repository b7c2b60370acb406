import os
from pathlib import Path
from dotenv import load_dotenv
from fastapi import Header, HTTPException
from jose import JWTError, jwt

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def verify_token(authorization: str = Header(None)) -> int:
    """Return the id of the user the bearer token was issued to."""
    if not authorization:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported authorization scheme")
        claims = jwt.decode(token, os.getenv("JWT_SECRET"), algorithms=["HS256"])
        return int(claims["sub"])
    except (ValueError, KeyError, TypeError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
