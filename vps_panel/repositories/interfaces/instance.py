from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple
from vps_panel.database import models

class IInstanceRepository(ABC):
    @abstractmethod
    def create(self, instance_model: models.Instance) -> models.Instance:
        """새로운 인스턴스 정보를 데이터베이스에 생성합니다."""
        pass

    @abstractmethod
    def find_by_id(self, instance_id: int) -> Optional[models.Instance]:
        """고유 ID로 특정 인스턴스를 조회합니다."""
        pass

    @abstractmethod
    def find_by_address(self, address: str) -> Optional[models.Instance]:
        """주소로 특정 인스턴스를 조회합니다. 주소 중복 검사에 사용합니다."""
        pass

    @abstractmethod
    def list_page(self, owner_id: Optional[int], status: Optional[str],
                  offset: int, limit: int) -> Tuple[List[models.Instance], int]:
        """
        최근 생성 순으로 인스턴스 한 페이지와 조건에 맞는 전체 개수를 조회합니다.

        Args:
            owner_id: None이 아니면 해당 사용자가 소유한 인스턴스만 조회합니다.
            status: None이 아니면 해당 상태의 인스턴스만 조회합니다.
        """
        pass

    @abstractmethod
    def list_ids_by_owner(self, owner_id: int) -> List[int]:
        """특정 사용자가 소유한 모든 인스턴스의 ID 목록을 조회합니다."""
        pass

    @abstractmethod
    def list_by_status(self, status: str) -> List[models.Instance]:
        """특정 상태의 모든 인스턴스를 조회합니다."""
        pass

    @abstractmethod
    def count(self, status: Optional[str] = None) -> int:
        """전체 (또는 특정 상태의) 인스턴스 개수를 조회합니다."""
        pass

    @abstractmethod
    def resource_totals_by_status(self) -> List[Dict[str, Any]]:
        """
        상태별 인스턴스 개수와 CPU/RAM/스토리지 합계를 조회합니다.

        Returns:
            [{'status': 'running', 'count': 2, 'cpu': 4, 'ram': 2048, 'storage': 40}, ...]
        """
        pass

    @abstractmethod
    def update(self, instance: models.Instance) -> models.Instance:
        """변경된 인스턴스 정보를 커밋합니다. 버전이 맞지 않으면 StaleDataError가 발생합니다."""
        pass

    @abstractmethod
    def delete(self, instance: models.Instance) -> bool:
        """특정 인스턴스(와 스냅샷)를 데이터베이스에서 삭제합니다."""
        pass
