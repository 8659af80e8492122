from fastapi import APIRouter, Query, Request, Response, status
from typing import Optional

from clinic_chat.config import get_settings
from clinic_chat.deps import CurrentChat, CurrentIdentity
from clinic_chat.models import Attachment, SessionMetadata
from clinic_chat.rate_limit import limiter
from clinic_chat.schemas import (
    ChatMessageEditIn,
    ChatMessageIn,
    ChatMessageOut,
    ChatSessionOut,
    ContactOut,
    DoctorOut,
    MarkReadOut,
    MessagePageOut,
    SessionCreateIn,
)
from clinic_chat.services.chat_service import ChatService
from clinic_chat.services.identity_service import Identity

settings = get_settings()

router = APIRouter(tags=["chat"])


@router.get("/sessions", response_model=list[ChatSessionOut])
async def list_sessions(current: Identity = CurrentIdentity, chat: ChatService = CurrentChat):
    """قائمة المحادثات النشطة مع آخر رسالة وعدد الرسائل غير المقروءة."""
    items = await chat.list_sessions(current.user_id, current.role)
    return [ChatSessionOut.from_document(i.session, unread_count=i.unread_count) for i in items]


@router.post("/sessions", response_model=ChatSessionOut)
async def open_session(
    payload: SessionCreateIn,
    response: Response,
    current: Identity = CurrentIdentity,
    chat: ChatService = CurrentChat,
):
    """فتح محادثة مع طبيب، أو إرجاع المحادثة الموجودة لنفس الزوج."""
    metadata = SessionMetadata(
        subject=payload.subject,
        priority=payload.priority,
        related_appointment_id=payload.related_appointment_id,
    )
    session, created = await chat.get_or_create_session(current, payload.counterpart_id, metadata)
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    unread = 0 if created else await chat.count_unread(session.id, current.user_id)
    return ChatSessionOut.from_document(session, unread_count=unread)


@router.delete("/sessions/{session_id}", response_model=ChatSessionOut)
async def deactivate_session(session_id: str, current: Identity = CurrentIdentity, chat: ChatService = CurrentChat):
    """إغلاق المحادثة أمام الرسائل الجديدة مع الإبقاء على السجل."""
    session = await chat.deactivate_session(session_id, current.user_id)
    return ChatSessionOut.from_document(session)


@router.get("/contacts", response_model=list[ContactOut])
async def list_contacts(current: Identity = CurrentIdentity, chat: ChatService = CurrentChat):
    contacts = await chat.list_contacts(current)
    return [
        ContactOut(
            user_id=p.user_id,
            user_role=p.user_role,
            display_name=p.display_name,
            session_id=session_id,
        )
        for p, session_id in contacts
    ]


@router.get("/doctors", response_model=list[DoctorOut])
async def list_doctors(current: Identity = CurrentIdentity, chat: ChatService = CurrentChat):
    """الأطباء المتاحون للمحادثة مرتبين بالاسم."""
    doctors = await chat.list_available_doctors()
    return [
        DoctorOut(
            user_id=d.user_id,
            display_name=d.display_name,
            specialization=d.specialization,
            image_url=d.image_url,
        )
        for d in doctors
    ]


@router.get("/sessions/{session_id}/messages", response_model=MessagePageOut)
async def get_messages(
    session_id: str,
    cursor: Optional[str] = Query(None, description="Opaque cursor from a previous page"),
    limit: Optional[int] = Query(None, ge=1),
    current: Identity = CurrentIdentity,
    chat: ChatService = CurrentChat,
):
    """استرجاع الرسائل بترتيب زمني تصاعدي مع ترقيم صفحات بالمؤشر."""
    page = await chat.list_messages(session_id, current.user_id, cursor=cursor, limit=limit)
    return MessagePageOut(
        messages=[ChatMessageOut.from_document(m) for m in page.messages],
        next_cursor=page.next_cursor,
    )


@router.post("/sessions/{session_id}/messages", response_model=ChatMessageOut, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.RATE_LIMIT_MESSAGES)
async def send_message(
    request: Request,
    session_id: str,
    payload: ChatMessageIn,
    current: Identity = CurrentIdentity,
    chat: ChatService = CurrentChat,
):
    """إرسال رسالة جديدة."""
    message = await chat.post_message(
        session_id,
        current,
        payload.content,
        content_type=payload.content_type,
        reply_to_message_id=payload.reply_to_message_id,
        attachments=[Attachment(**a.model_dump()) for a in payload.attachments],
        client_message_id=payload.client_message_id,
    )
    return ChatMessageOut.from_document(message)


@router.put("/sessions/{session_id}/read", response_model=MarkReadOut)
async def mark_session_read(session_id: str, current: Identity = CurrentIdentity, chat: ChatService = CurrentChat):
    """تعليم كل الرسائل الواردة في المحادثة كمقروءة."""
    count = await chat.mark_read(session_id, current)
    return MarkReadOut(session_id=session_id, marked_count=count)


@router.put("/messages/{message_id}", response_model=ChatMessageOut)
async def edit_message(
    message_id: str,
    payload: ChatMessageEditIn,
    current: Identity = CurrentIdentity,
    chat: ChatService = CurrentChat,
):
    """تعديل رسالة خلال المهلة المسموحة."""
    message = await chat.edit_message(message_id, current.user_id, payload.content)
    return ChatMessageOut.from_document(message)


@router.delete("/messages/{message_id}", response_model=ChatMessageOut)
async def delete_message(message_id: str, current: Identity = CurrentIdentity, chat: ChatService = CurrentChat):
    """حذف ناعم للرسالة."""
    message = await chat.delete_message(message_id, current.user_id)
    return ChatMessageOut.from_document(message)
