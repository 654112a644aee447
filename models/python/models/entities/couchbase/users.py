from typing import List, Optional, Literal
from pydantic import BaseModel
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData

from .common import Location


class RestaurantInfo(BaseModel):
    business_name: str
    cuisine: List[str] = []
    logo_url: Optional[str] = None
    cover_image_url: Optional[str] = None
    description: Optional[str] = None


class UserData(BaseCouchbaseEntityData):
    email: str = ""
    name: str = ""
    role: Literal["handyman", "client", "business", "restaurant"] = "client"
    avatar: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[Location] = None
    categories: List[str] = []
    rating: Optional[float] = None
    completed_jobs: int = 0
    push_token: Optional[str] = None
    restaurant_info: Optional[RestaurantInfo] = None


class User(BaseModelCouchbase[UserData]):
    _collection_name = "users"
