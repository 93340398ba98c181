from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from vps_panel.utils.clock import utcnow
from ..database import Base


class Snapshot(Base):
    """
    특정 인스턴스의 특정 시점을 표시하는 마커입니다.
    소유권은 인스턴스를 통해 간접적으로 결정됩니다. (snapshot -> instance -> owner)
    """
    __tablename__ = "snapshots"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    instance_id = Column(Integer, ForeignKey("instances.id"), nullable=False, index=True)
    instance = relationship("Instance", back_populates="snapshots")
