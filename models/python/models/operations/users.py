from typing import Any, Dict, List, Optional

from models.entities.couchbase.common import Location
from models.entities.couchbase.users import RestaurantInfo, User, UserData
from models.errors import InvalidArgument, NotFound, Unauthenticated
from models.identity import Identity

PROFILE_FIELDS = {"name", "role", "avatar", "phone", "categories", "push_token"}


async def user_get(user_id: str) -> Optional[User]:
    return await User.get(user_id)


async def user_resolve(identity: Optional[Identity]) -> User:
    """Map a resolved principal to its stored user, creating it on first sight."""
    if identity is None or not identity.caller_id:
        raise Unauthenticated()
    existing_user = await User.get(identity.caller_id)
    if existing_user:
        return existing_user
    new_user_data = UserData(
        email=identity.email or "",
        name=identity.display_name or "",
        avatar=identity.avatar_url,
    )
    return await User.create(new_user_data, key=identity.caller_id, user_id=identity.caller_id)


async def user_update_profile(identity: Optional[Identity], data: Dict[str, Any]) -> User:
    if data.get("role") not in (None, "handyman", "client", "business", "restaurant"):
        raise InvalidArgument(f"Unknown role: {data['role']}")

    user = await user_resolve(identity)
    for key, value in data.items():
        if key in PROFILE_FIELDS and value is not None:
            setattr(user.data, key, value)
    if data.get("location"):
        user.data.location = Location(**data["location"])
    if data.get("restaurant_info"):
        user.data.restaurant_info = RestaurantInfo(**data["restaurant_info"])

    # Profile writes are owner-exclusive; last write wins
    user.cas = None
    return await User.update(user)


async def user_require(user_id: str) -> User:
    user = await User.get(user_id)
    if not user:
        raise NotFound(f"User {user_id} not found")
    return user


async def users_with_push_token() -> List[User]:
    """Linear scan: every user with a registered push endpoint."""
    users = await User.find()
    return [u for u in users if u.data.push_token]


async def users_handymen_for_category(category: str) -> List[User]:
    handymen = await User.find({"role": "handyman"})
    return [h for h in handymen if category in h.data.categories and h.data.push_token]


def user_summary(user: Optional[User]) -> Optional[Dict[str, Any]]:
    if not user:
        return None
    return {
        "id": user.id,
        "name": user.data.name,
        "avatar": user.data.avatar,
        "rating": user.data.rating,
        "completed_jobs": user.data.completed_jobs,
    }


def user_display_name(user: User) -> str:
    if user.data.restaurant_info:
        return user.data.restaurant_info.business_name
    return user.data.name or "Someone"


def restaurant_summary(user: Optional[User], detailed: bool = False) -> Optional[Dict[str, Any]]:
    if not user:
        return None
    info = user.data.restaurant_info
    summary: Dict[str, Any] = {
        "id": user.id,
        "name": info.business_name if info else user.data.name,
        "logo": (info.logo_url if info else None) or user.data.avatar,
        "cuisine": info.cuisine if info else [],
        "rating": user.data.rating,
    }
    if detailed:
        summary.update({
            "cover_image": info.cover_image_url if info else None,
            "description": info.description if info else None,
            "location": user.data.location.model_dump() if user.data.location else None,
            "phone": user.data.phone,
        })
    return summary
