from typing import Any, Dict, Optional

from pydantic import BaseModel, EmailStr


class UserPublic(BaseModel):

    id: str
    email: Optional[EmailStr] = None
    user_name: Optional[str] = None
    role: str
    profile_picture: Optional[str] = None
    last_active: Optional[str] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "UserPublic":
        last_active = doc.get("last_active")
        return cls(
            id=str(doc["_id"]),
            email=doc.get("email"),
            user_name=doc.get("user_name"),
            role=doc.get("role") or "",
            profile_picture=doc.get("profile_picture"),
            last_active=str(last_active) if last_active is not None else None,
        )
