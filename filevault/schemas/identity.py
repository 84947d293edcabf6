from typing import Optional
from pydantic import BaseModel


# Caller identity as asserted by the auth service's bearer token
class Identity(BaseModel):
    id: str
    role: Optional[str] = None
    email: Optional[str] = None
