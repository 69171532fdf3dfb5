from pydantic import BaseModel, ConfigDict
from typing import Optional

class UserResponse(BaseModel):
    user_id: str
    full_name: str
    role: str

    model_config = ConfigDict(from_attributes=True)

# Internal representation of the JWT claims issued by the auth provider
class TokenData(BaseModel):
    sub: Optional[str] = None
    role: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
