from pydantic import BaseModel


class TokenPayload(BaseModel):
    sub: str  # user id from the auth provider
    exp: int
    type: str = "access"
