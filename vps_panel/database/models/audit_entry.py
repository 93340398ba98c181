from sqlalchemy import Column, Integer, String, DateTime

from vps_panel.utils.clock import utcnow
from ..database import Base


class AuditEntry(Base):
    """
    한 주체가 수행한 하나의 작업을 기록하는 추가 전용(append-only) 감사 로그입니다.
    instance_id와 principal_id에는 외래 키를 걸지 않습니다.
    인스턴스나 사용자가 삭제되어도 기록은 그대로 남아야 하기 때문입니다.
    """
    __tablename__ = "audit_entries"
    id = Column(Integer, primary_key=True, index=True)
    action = Column(String(100), nullable=False, index=True)
    instance_id = Column(Integer, nullable=True, index=True)
    principal_id = Column(Integer, nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)
    details = Column(String(500), nullable=True)
