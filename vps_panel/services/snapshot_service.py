import logging
import time
from typing import Any, Dict, Optional, Tuple

from vps_panel.database import models
from vps_panel.repositories.interfaces import IInstanceRepository, ISnapshotRepository
from vps_panel.services.audit_service import AuditService
from vps_panel.services.authorization import Action, Principal, Target, enforce
from vps_panel.services.exceptions import (
    InstanceNotFoundError, InstanceNotRunningError, InstanceNotStoppedError, SnapshotNotFoundError
)
from vps_panel.utils.pagination import build_page, normalize_page
from vps_panel.utils.validators import check_name

logger = logging.getLogger(__name__)


def snapshot_to_dict(snapshot: models.Snapshot) -> Dict[str, Any]:
    return {
        "id": snapshot.id,
        "instance_id": snapshot.instance_id,
        "name": snapshot.name,
        "created_at": snapshot.created_at.isoformat() if snapshot.created_at else None,
    }


def default_snapshot_name() -> str:
    """이름이 주어지지 않았을 때 사용하는 타임스탬프 기반 이름 (예: snapshot-1700000000000)."""
    return f"snapshot-{int(time.time() * 1000)}"


class SnapshotService:
    """
    인스턴스 스냅샷을 관리합니다.

    스냅샷의 소유권은 항상 인스턴스를 명시적으로 조회하여 판단합니다. (snapshot -> instance -> owner)
    실제 디스크 데이터의 캡처/복원은 이 서비스의 범위가 아니며, 작업 기록만 남깁니다.
    """

    def __init__(self, snapshot_repo: ISnapshotRepository, instance_repo: IInstanceRepository,
                 audit_service: AuditService):
        self.snapshot_repo = snapshot_repo
        self.instance_repo = instance_repo
        self.audit_service = audit_service

    def create_snapshot(self, principal: Principal, instance_id: int, name: Optional[str] = None) -> Dict[str, Any]:
        """
        실행 중인 인스턴스의 스냅샷을 생성합니다.

        Args:
            principal: 요청한 주체.
            instance_id: 스냅샷을 만들 인스턴스의 ID.
            name: 스냅샷 이름. 없으면 타임스탬프 기반 이름을 사용합니다.

        Raises:
            InstanceNotFoundError: 인스턴스가 존재하지 않을 때.
            ForbiddenError: 소유자도 관리자도 아닐 때.
            InstanceNotRunningError: 인스턴스가 running 상태가 아닐 때.
        """
        instance = self._find_instance(principal, instance_id, Action.SNAPSHOT_CREATE)
        snapshot_name = check_name("name", name) if name else default_snapshot_name()
        if instance.status != models.STATUS_RUNNING:
            raise InstanceNotRunningError("Instance must be running to create snapshot.")

        snapshot = self.snapshot_repo.create(models.Snapshot(instance_id=instance.id, name=snapshot_name))
        self.audit_service.record(
            "Snapshot Created", principal.id, instance.id,
            f"Snapshot \"{snapshot_name}\" created for instance \"{instance.name}\"",
        )
        logger.info("Snapshot %s created for instance %s", snapshot.id, instance.id)
        return snapshot_to_dict(snapshot)

    def list_snapshots(self, principal: Principal, instance_id: int, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        """특정 인스턴스의 스냅샷을 최신순으로 조회합니다."""
        page, limit, offset = normalize_page(page, limit)
        instance = self._find_instance(principal, instance_id, Action.SNAPSHOT_LIST)
        snapshots, total = self.snapshot_repo.list_page(instance.id, offset, limit)
        result = build_page([snapshot_to_dict(s) for s in snapshots], total, page, limit)
        result["instance"] = {"id": instance.id, "name": instance.name, "status": instance.status,
                              "address": instance.address}
        return result

    def list_all_snapshots(self, principal: Principal, instance_id: Optional[int] = None,
                           page: int = 1, limit: int = 10) -> Dict[str, Any]:
        """
        전체 스냅샷을 최신순으로 조회합니다. (관리자 전용)

        Raises:
            ForbiddenError: 관리자가 아닐 때.
        """
        enforce(principal, Action.SNAPSHOT_LIST_ALL)
        page, limit, offset = normalize_page(page, limit)
        snapshots, total = self.snapshot_repo.list_page(instance_id, offset, limit)
        return build_page([snapshot_to_dict(s) for s in snapshots], total, page, limit)

    def get_snapshot(self, principal: Principal, snapshot_id: int) -> Dict[str, Any]:
        snapshot, instance = self._find_snapshot(principal, snapshot_id, Action.SNAPSHOT_READ)
        data = snapshot_to_dict(snapshot)
        data["instance"] = {"id": instance.id, "name": instance.name, "status": instance.status,
                            "owner_id": instance.owner_id}
        return data

    def delete_snapshot(self, principal: Principal, snapshot_id: int) -> bool:
        """
        스냅샷을 삭제합니다.

        Raises:
            SnapshotNotFoundError: 스냅샷이 존재하지 않을 때.
            ForbiddenError: 인스턴스 소유자도 관리자도 아닐 때.
        """
        snapshot, instance = self._find_snapshot(principal, snapshot_id, Action.SNAPSHOT_DELETE)
        snapshot_name = snapshot.name
        self.snapshot_repo.delete(snapshot)
        self.audit_service.record(
            "Snapshot Deleted", principal.id, instance.id,
            f"Snapshot \"{snapshot_name}\" deleted successfully",
        )
        return True

    def restore_snapshot(self, principal: Principal, snapshot_id: int) -> Dict[str, Any]:
        """
        스냅샷으로부터의 복원을 기록합니다. 인스턴스가 stopped 상태여야 하며,
        인스턴스 필드는 변경하지 않습니다.

        Raises:
            SnapshotNotFoundError: 스냅샷이 존재하지 않을 때.
            ForbiddenError: 인스턴스 소유자도 관리자도 아닐 때.
            InstanceNotStoppedError: 인스턴스가 stopped 상태가 아닐 때.
        """
        snapshot, instance = self._find_snapshot(principal, snapshot_id, Action.SNAPSHOT_RESTORE)
        if instance.status != models.STATUS_STOPPED:
            raise InstanceNotStoppedError("Instance must be stopped to restore from snapshot.")

        self.audit_service.record(
            "Instance Restored from Snapshot", principal.id, instance.id,
            f"Instance \"{instance.name}\" restored from snapshot \"{snapshot.name}\"",
        )
        return {
            "snapshot": snapshot_to_dict(snapshot),
            "instance": {"id": instance.id, "name": instance.name, "status": instance.status},
        }

    def _find_instance(self, principal: Principal, instance_id: int, action: Action) -> models.Instance:
        instance = self.instance_repo.find_by_id(instance_id)
        if not instance:
            raise InstanceNotFoundError(f"Instance with id '{instance_id}' not found.")
        enforce(principal, action, Target(owner_id=instance.owner_id))
        return instance

    def _find_snapshot(self, principal: Principal, snapshot_id: int,
                       action: Action) -> Tuple[models.Snapshot, models.Instance]:
        snapshot = self.snapshot_repo.find_by_id(snapshot_id)
        if not snapshot:
            raise SnapshotNotFoundError(f"Snapshot with id '{snapshot_id}' not found.")
        instance = self.instance_repo.find_by_id(snapshot.instance_id)
        if not instance:
            # 인스턴스 삭제 시 스냅샷도 함께 지워지므로 정상적으로는 발생하지 않는다
            raise SnapshotNotFoundError(f"Snapshot with id '{snapshot_id}' has no instance.")
        enforce(principal, action, Target(owner_id=instance.owner_id))
        return snapshot, instance
