from beanie import Document, Indexed
from pydantic import Field
from datetime import datetime, timezone
from clinic_chat.constants import Role


class User(Document):
    """مستخدم النظام (مريض/طبيب/مدير).

    ملاحظة:
    - هذه الوثيقة يملكها دليل المستخدمين الخارجي؛ خدمة المحادثة تقرأها فقط
      (تأكيد الهوية والبحث عن الطرف الآخر).
    """

    name: str | None = None
    phone: Indexed(str, unique=True)
    role: Role
    imageUrl: str | None = None
    specialization: str | None = None  # للأطباء فقط
    is_active: bool = True

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Settings:
        name = "users"
