from abc import ABC, abstractmethod
from typing import List, Optional, Tuple
from vps_panel.database import models

class ISnapshotRepository(ABC):
    @abstractmethod
    def create(self, snapshot_model: models.Snapshot) -> models.Snapshot:
        """새로운 스냅샷을 데이터베이스에 생성합니다."""
        pass

    @abstractmethod
    def find_by_id(self, snapshot_id: int) -> Optional[models.Snapshot]:
        """고유 ID로 특정 스냅샷을 조회합니다."""
        pass

    @abstractmethod
    def list_page(self, instance_id: Optional[int], offset: int, limit: int) -> Tuple[List[models.Snapshot], int]:
        """최신순으로 스냅샷 한 페이지와 전체 개수를 조회합니다. instance_id가 None이면 전체가 대상입니다."""
        pass

    @abstractmethod
    def count_by_instance_id(self, instance_id: int) -> int:
        """특정 인스턴스에 속한 스냅샷의 개수를 조회합니다."""
        pass

    @abstractmethod
    def delete(self, snapshot: models.Snapshot) -> bool:
        """특정 스냅샷을 데이터베이스에서 삭제합니다."""
        pass
