from pydantic import BaseModel


class Location(BaseModel):
    lat: float
    lng: float
    address: str = ""


class Money(BaseModel):
    amount: float
    currency: str = "EUR"
