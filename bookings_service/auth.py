from typing import Callable, Dict, Any

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import ALGORITHM, SECRET_KEY

security = HTTPBearer()


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode a JWT and return its user claims.

    Raises
    ------
    JWTError
        If the token is invalid, expired, or lacks sub, role or user_id.
    """
    payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    username = payload.get("sub")
    role = payload.get("role")
    user_id = payload.get("user_id")
    if username is None or role is None or user_id is None:
        raise JWTError("Token is missing user claims")
    return {"user_id": str(user_id), "username": username, "role": role}


async def get_current_user_claims(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Dict[str, Any]:
    """
    Decode a JWT bearer token and extract user claims.

    Parameters
    ----------
    credentials : HTTPAuthorizationCredentials
        Authorization header parsed by FastAPI's HTTPBearer.

    Returns
    -------
    Dict[str, Any]
        A dictionary containing:
        - 'user_id' : str, the booking owner reference
        - 'username' : str, used as the owner's display name
        - 'role' : str

    Raises
    ------
    HTTPException
        If the token is missing, invalid, or cannot be decoded.
    """
    try:
        return decode_token(credentials.credentials)
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_roles(*allowed_roles: str) -> Callable:
    """
    Build a dependency that enforces a set of allowed roles.

    Returns
    -------
    Callable
        A FastAPI dependency that raises HTTP 403 for any other role.
    """

    async def dependency(claims: Dict[str, Any] = Depends(get_current_user_claims)) -> Dict[str, Any]:
        if claims["role"] not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not enough permissions",
            )
        return claims

    return dependency
