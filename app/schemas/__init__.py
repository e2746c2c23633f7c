"""
app.schemas
~~~~~~~~~~~
Pydantic schemas and models for the API.
"""
from app.schemas.api_response import ApiResponse
from app.schemas.live_session import (
    ChatMessage,
    CourseRef,
    CurrentUser,
    LiveSession,
    RosterEntry,
    SessionStatus,
    WaitingRoomEntry,
)
from app.schemas.signaling import ClientMessage, ServerEvent, parse_client_message

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
