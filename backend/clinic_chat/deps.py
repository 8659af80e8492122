from fastapi import Depends, Request

from clinic_chat.security import get_current_identity


def get_chat_service(request: Request):
    """Chat service built at startup and stored on the app state."""
    return request.app.state.chat_service


# Common dependencies used across routers
CurrentIdentity = Depends(get_current_identity)
CurrentChat = Depends(get_chat_service)
