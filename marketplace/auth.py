from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from marketplace.config import get_settings


def verify_token(authorization: str = Header(...), settings=Depends(get_settings)):
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("not a bearer token")
        return jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
