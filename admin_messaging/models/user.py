from typing import Optional, TypedDict


ROLE_ADMIN = "admin"
ROLE_SUPER_ADMIN = "superAdmin"

# roles that may moderate (e.g. delete) messages they did not send
ELEVATED_ROLES = (ROLE_SUPER_ADMIN,)

# who may open a conversation with whom
MESSAGING_DIRECTORY = {
    ROLE_ADMIN: (ROLE_SUPER_ADMIN,),
    ROLE_SUPER_ADMIN: (ROLE_ADMIN, ROLE_SUPER_ADMIN),
}


class UserDocument(TypedDict, total=False):

    _id: str
    email: str
    user_name: str
    role: str
    profile_picture: Optional[str]
    last_active: Optional[str]
