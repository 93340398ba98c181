from abc import ABC, abstractmethod
from typing import Optional
from vps_panel.database import models

class ICapacityLedgerRepository(ABC):
    @abstractmethod
    def find_latest(self) -> Optional[models.CapacityLedger]:
        """last_updated 기준으로 가장 최근의 원장 행을 조회합니다."""
        pass

    @abstractmethod
    def create(self, ledger_model: models.CapacityLedger) -> models.CapacityLedger:
        """새 원장 행을 생성합니다."""
        pass

    @abstractmethod
    def update(self, ledger: models.CapacityLedger) -> models.CapacityLedger:
        """변경된 원장 행을 커밋합니다. 버전이 맞지 않으면 StaleDataError가 발생합니다."""
        pass

    @abstractmethod
    def count(self) -> int:
        pass
