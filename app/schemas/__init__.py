"""
app.schemas
~~~~~~~~~~~
Pydantic schemas and models for the API.
"""
from app.schemas.api_response import ApiResponse
from app.schemas.chat import (
    AvailableUserData,
    ConversationData,
    CreateGroupRequest,
    MessageData,
    MessagesPageData,
    NewMessageData,
    SendMessagePayload,
    UnreadCountData,
    WithUserRequest,
)

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
