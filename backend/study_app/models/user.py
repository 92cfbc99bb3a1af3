from sqlalchemy import Column, String, DateTime
from study_app.core.timeutil import utcnow
from study_app.db.base_class import Base
from study_app.models.enums import UserRole


class User(Base):
    """管理端用户模型

    Attributes:
        id: 用户ID
        email: 登录邮箱
        role: ADMIN | RESEARCHER
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    email = Column(String, unique=True, nullable=False)
    role = Column(String, nullable=False, default=UserRole.RESEARCHER.value)
    created_at = Column(DateTime, default=utcnow, nullable=False)
