from pydantic import BaseModel


class RegisterRequest(BaseModel):
    email: str  # plain str to allow .local and other dev domains
    password: str
    fullName: str = ""
    phone: str = ""


class LoginRequest(BaseModel):
    email: str
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class UserOut(BaseModel):
    id: str
    email: str
    fullName: str = ""
    phone: str = ""
    role: str
    isActive: bool = True

    @classmethod
    def from_model(cls, u) -> "UserOut":
        return cls(id=u.id, email=u.email, fullName=u.full_name or "", phone=u.phone or "",
                   role=u.role, isActive=u.is_active)


class UserUpdate(BaseModel):
    fullName: str | None = None
    role: str | None = None
    isActive: bool | None = None
