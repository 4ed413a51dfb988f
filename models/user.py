from pydantic import BaseModel
from typing import Optional
from datetime import datetime


class User(BaseModel):
    """Authenticated account issuing invoices"""
    id: str
    email: str
    name: Optional[str] = None
    created_at: Optional[datetime] = None


class ApiClient(BaseModel):
    """External integration authenticated by X-API-Key, acting for one owner"""
    owner_id: str
    source: str = "api"
    key_prefix: str
