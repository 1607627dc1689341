"""
Authentication utilities: bearer token validation and actor resolution
"""
import os
from typing import Optional

from fastapi import HTTPException, Header
from jose import JWTError, jwt
from dotenv import load_dotenv

from class_registry.models import Actor, ActorRole
from .supabase_client import get_supabase_client

load_dotenv()
load_dotenv('../.env')

# Same secret Supabase signs its access tokens with
JWT_SECRET = os.getenv("SUPABASE_JWT_SECRET")
JWT_ALGORITHM = "HS256"
STAFF_ROLES = {role.value for role in ActorRole}


def _user_from_token(token: str) -> dict:
    """Return {"id", "email"} for a valid token."""
    if JWT_SECRET:
        try:
            claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM], audience="authenticated")
        except JWTError:
            raise HTTPException(status_code=401, detail="Invalid or expired token")
        return {"id": claims["sub"], "email": claims.get("email")}

    user_response = get_supabase_client().auth.get_user(token)
    if not user_response or not user_response.user:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return {"id": user_response.user.id, "email": user_response.user.email}


async def get_current_user(authorization: Optional[str] = Header(None)):
    """
    Validate the bearer token and return user info

    Args:
        authorization: Bearer token from Authorization header

    Returns:
        dict: User information including id, email, role

    Raises:
        HTTPException: If token is invalid or user not found
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")

    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    token = authorization.replace("Bearer ", "")

    try:
        user = _user_from_token(token)

        profile_response = get_supabase_client().table('profiles') \
            .select('id, role, full_name') \
            .eq('id', user["id"]) \
            .single() \
            .execute()

        if not profile_response.data:
            raise HTTPException(status_code=404, detail="User profile not found")

        profile = profile_response.data
        return {
            **user,
            "role": profile.get("role", "student"),
            "full_name": profile.get("full_name"),
        }

    except HTTPException:
        raise
    except Exception as e:
        print(f"Auth error: {e}")
        raise HTTPException(status_code=401, detail="Could not validate credentials")


def require_staff(user: dict):
    """
    Check that the user is an admin or a professor

    Raises:
        HTTPException: If the user has any other role
    """
    if user.get("role") not in STAFF_ROLES:
        raise HTTPException(status_code=403, detail="Admin or professor access required")


def resolve_actor(user: dict) -> Actor:
    """Build the Actor used by the registry workflow (checks the role first)."""
    require_staff(user)
    return Actor(id=str(user["id"]), role=ActorRole(user["role"]))
