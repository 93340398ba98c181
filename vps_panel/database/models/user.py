from sqlalchemy import Column, Integer, String, DateTime

from vps_panel.utils.clock import utcnow
from ..database import Base

ROLE_ADMIN = "admin"
ROLE_USER = "user"
ROLES = (ROLE_ADMIN, ROLE_USER)


class User(Base):
    """
    시스템에 로그인하고 인스턴스를 소유하는 주체(Principal)를 나타냅니다.
    역할은 'admin' 또는 'user' 두 가지뿐이며, 역할 변경은 관리자만 할 수 있습니다.
    """
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    role = Column(String(16), nullable=False, default=ROLE_USER)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
