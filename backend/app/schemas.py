from pydantic import BaseModel, ConfigDict, Field


class ClientMessage(BaseModel):
    """Inbound relay websocket message. Unknown fields are ignored."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: str = ""
    content: str | None = None
    session_id: str | None = Field(default=None, alias="sessionId")


class SessionIdMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str = "sessionId"
    session_id: str = Field(alias="sessionId")


class AssistantResponseMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str = "assistant_response"
    content: str
    session_id: str = Field(alias="sessionId")


class ErrorMessage(BaseModel):
    type: str = "error"
    message: str


class StatusUpdateMessage(BaseModel):
    type: str = "status_update"
    message: str


class HealthResponse(BaseModel):
    status: str
    service: str
