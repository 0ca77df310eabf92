from typing import Literal, Optional, TypedDict


UserRole = Literal["client", "provider", "admin"]


class UserDocument(TypedDict, total=False):

    _id: str
    name: Optional[str]
    role: UserRole
