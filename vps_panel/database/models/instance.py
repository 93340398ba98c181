from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from vps_panel.utils.clock import utcnow
from ..database import Base

STATUS_STOPPED = "stopped"
STATUS_RUNNING = "running"
STATUS_PAUSED = "paused"
STATUS_ERROR = "error"
STATUSES = (STATUS_STOPPED, STATUS_RUNNING, STATUS_PAUSED, STATUS_ERROR)


class Instance(Base):
    """
    사용자가 요청하고 관리하는 가상 머신 형태의 레코드(인스턴스)를 나타냅니다.
    CPU, RAM, 스토리지 용량과 전체 플릿에서 유일한 주소(IPv4)를 가지며, 한 명의 사용자가 소유합니다.
    'running'은 논리적인 상태일 뿐, 실제 하이퍼바이저 동작과는 관계가 없습니다.
    """
    __tablename__ = "instances"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    status = Column(String(16), nullable=False, default=STATUS_STOPPED, index=True)
    cpu = Column(Integer, nullable=False)
    ram = Column(Integer, nullable=False)
    storage = Column(Integer, nullable=False)
    address = Column(String(45), unique=True, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    version_id = Column(Integer, nullable=False)

    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    # 인스턴스를 삭제하면 스냅샷도 같은 트랜잭션에서 함께 삭제됩니다.
    snapshots = relationship("Snapshot", back_populates="instance", cascade="all, delete-orphan")

    # 동시 수정 시 먼저 커밋한 쪽만 반영되도록 낙관적 잠금을 사용합니다.
    __mapper_args__ = {"version_id_col": version_id}
