from sqlalchemy import Column, Integer, DateTime

from vps_panel.utils.clock import utcnow
from ..database import Base


class CapacityLedger(Base):
    """
    플릿 전체의 총 용량과 사용량을 기록하는 원장입니다.
    여러 행이 있을 수 있지만 항상 last_updated가 가장 최근인 행이 현재 원장입니다.
    used_* <= total_* 는 강제되지 않으며, 위반 여부는 사용률 계산 시 보고됩니다.
    """
    __tablename__ = "capacity_ledgers"
    id = Column(Integer, primary_key=True, index=True)
    total_cpu = Column(Integer, nullable=False)
    total_ram = Column(Integer, nullable=False)
    total_storage = Column(Integer, nullable=False)
    used_cpu = Column(Integer, nullable=False, default=0)
    used_ram = Column(Integer, nullable=False, default=0)
    used_storage = Column(Integer, nullable=False, default=0)
    last_updated = Column(DateTime, nullable=False, default=utcnow, index=True)
    version_id = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}
