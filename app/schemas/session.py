from pydantic import BaseModel


class SessionStatus(BaseModel):
    state: str = "NO_CREDENTIAL"
    source: str = "bootstrap"
    ws_connected: bool = False
    has_credential: bool = False
    resolved: int = 0
    subscribed: int = 0
    reconnect_count: int = 0
    last_error: str | None = None
    last_error_kind: str | None = None
    generation: int = 0
    updated_at: int | None = None


class AccessTokenRequest(BaseModel):
    access_token: str = ""
