from sqlalchemy import Text, text as sql_text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin
from .enums import RoleType


class Profile(Base, TimestampMixin):
    __tablename__ = "profiles"

    # opaque user id issued by the identity provider
    id: Mapped[str] = mapped_column(Text, primary_key=True)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[str] = mapped_column(RoleType, nullable=False, server_default=sql_text("'passenger'"))
