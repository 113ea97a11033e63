# billing/models/clients.py

from typing import Optional

from pydantic import BaseModel, EmailStr


class ClientOut(BaseModel):
    id: int
    name: str
    email: Optional[EmailStr] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    payment_terms_days: Optional[int] = None

    class Config:
        from_attributes = True
