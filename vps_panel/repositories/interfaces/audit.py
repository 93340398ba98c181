from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from vps_panel.database import models


@dataclass(frozen=True)
class AuditQuery:
    """
    감사 로그 조회 조건입니다.

    action/instance_id/principal_id/start/end는 호출자가 요청한 필터이고,
    scope_* 필드는 권한 정책이 정한 가시 범위입니다.
    scope_principal_id가 None이 아니면 (instance_id IN scope_instance_ids OR principal_id == scope_principal_id)
    조건이 추가됩니다.
    """
    action: Optional[str] = None
    instance_id: Optional[int] = None
    principal_id: Optional[int] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    scope_instance_ids: Tuple[int, ...] = ()
    scope_principal_id: Optional[int] = None


class IAuditRepository(ABC):
    @abstractmethod
    def create(self, entry_model: models.AuditEntry) -> models.AuditEntry:
        """감사 로그 항목을 추가합니다. 수정/삭제 메서드는 제공하지 않습니다."""
        pass

    @abstractmethod
    def find_by_id(self, entry_id: int) -> Optional[models.AuditEntry]:
        pass

    @abstractmethod
    def list_page(self, query: AuditQuery, offset: int, limit: int) -> Tuple[List[models.AuditEntry], int]:
        """최신순으로 조건에 맞는 감사 로그 한 페이지와 전체 개수를 조회합니다."""
        pass

    @abstractmethod
    def count(self, query: Optional[AuditQuery] = None) -> int:
        pass

    @abstractmethod
    def count_grouped(self, query: AuditQuery, key: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        조건에 맞는 감사 로그를 key 컬럼으로 묶어 개수를 셉니다.

        Args:
            key: 'action', 'instance_id', 'principal_id' 중 하나.
            limit: None이 아니면 상위 limit개만 반환합니다.

        Returns:
            개수 내림차순으로 정렬된 [{'key': ..., 'count': n}, ...] 리스트.
        """
        pass
