import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from vps_panel.database import models
from vps_panel.repositories.interfaces import IInstanceRepository, ISnapshotRepository
from vps_panel.services.audit_service import AuditService
from vps_panel.services.authorization import Action, Principal, Scope, Target, enforce
from vps_panel.services.ledger_service import CapacityLedgerService
from vps_panel.services.exceptions import (
    AlreadyRunningError,
    AlreadyStoppedError,
    ConcurrentUpdateError,
    DuplicateAddressError,
    InstanceNotFoundError,
    InvalidRequestError,
    NotRunningError,
    ServiceError,
)
from vps_panel.utils.pagination import build_page, normalize_page
from vps_panel.utils.validators import check_instance_resources, check_ipv4, check_name

logger = logging.getLogger(__name__)

# 작업 이름 -> (허용되는 현재 상태, 전이 후 상태, 거부 시 예외, 감사 로그 action)
TRANSITIONS = {
    "start": (
        {models.STATUS_STOPPED, models.STATUS_PAUSED, models.STATUS_ERROR},
        models.STATUS_RUNNING, AlreadyRunningError, "Instance Started",
    ),
    "stop": (
        {models.STATUS_RUNNING, models.STATUS_PAUSED, models.STATUS_ERROR},
        models.STATUS_STOPPED, AlreadyStoppedError, "Instance Stopped",
    ),
    # 재시작은 정지 후 시작을 모델링하지만 외부에서 보이는 최종 상태는 그대로 running이다
    "restart": (
        {models.STATUS_RUNNING},
        models.STATUS_RUNNING, NotRunningError, "Instance Restarted",
    ),
}

REJECT_MESSAGES = {
    "start": "Instance is already running.",
    "stop": "Instance is already stopped.",
    "restart": "Instance must be running to restart.",
}


def instance_to_dict(instance: models.Instance) -> Dict[str, Any]:
    return {
        "id": instance.id,
        "name": instance.name,
        "status": instance.status,
        "cpu": instance.cpu,
        "ram": instance.ram,
        "storage": instance.storage,
        "address": instance.address,
        "owner_id": instance.owner_id,
        "created_at": instance.created_at.isoformat() if instance.created_at else None,
        "updated_at": instance.updated_at.isoformat() if instance.updated_at else None,
    }


class ComputeService:
    """
    인스턴스 레지스트리와 수명 주기 상태 머신을 관리합니다.

    상태를 바꾸는 모든 작업은 (1) 대상 조회 (2) 권한 확인 (3) 검증 (4) 저장 (5) 감사 로그 추가
    (6) 리소스 원장 재계산 순서로 진행됩니다. 감사 로그 추가와 재계산의 실패는 경고로만 보고하고 이미 커밋된 인스턴스 변경은 되돌리지 않습니다.
    """

    def __init__(self, instance_repo: IInstanceRepository, snapshot_repo: ISnapshotRepository,
                 audit_service: AuditService, ledger_service: CapacityLedgerService):
        self.instance_repo = instance_repo
        self.snapshot_repo = snapshot_repo
        self.audit_service = audit_service
        self.ledger_service = ledger_service

    def create_instance(self, principal: Principal, name: str, cpu: int, ram: int, storage: int,
                        address: str) -> Dict[str, Any]:
        """
        요청한 주체가 소유하는 새 인스턴스를 'stopped' 상태로 생성합니다.

        Args:
            principal: 요청한 주체. 생성된 인스턴스의 소유자가 됩니다.
            name: 인스턴스 이름 (3~100자).
            cpu: CPU 코어 수 (1~32).
            ram: RAM 크기 MB (512~32768).
            storage: 스토리지 크기 GB (10~2048).
            address: 플릿 전체에서 유일한 IPv4 주소.

        Returns:
            생성된 인스턴스(instance)와 원장 재계산 경고(warnings)를 담은 딕셔너리.

        Raises:
            InvalidRangeError: 자원 값이 허용 범위를 벗어났을 때.
            InvalidRequestError: 필드 형식이 잘못되었을 때.
            DuplicateAddressError: 주소가 이미 사용 중일 때.
        """
        enforce(principal, Action.INSTANCE_CREATE)
        for field, value in (("cpu", cpu), ("ram", ram), ("storage", storage)):
            if value is None:
                raise InvalidRequestError(f"'{field}' is required.")
        name = check_name("name", name)
        resources = check_instance_resources(cpu, ram, storage)
        address = check_ipv4(address)

        if self.instance_repo.find_by_address(address):
            raise DuplicateAddressError(f"Address '{address}' is already in use.")

        new_instance = models.Instance(
            name=name,
            status=models.STATUS_STOPPED,
            address=address,
            owner_id=principal.id,
            **resources
        )
        try:
            instance = self.instance_repo.create(new_instance)
        except IntegrityError as e:
            # 중복 검사와 INSERT 사이에 다른 요청이 같은 주소를 선점한 경우
            raise DuplicateAddressError(f"Address '{address}' is already in use.") from e

        warnings = self._record_best_effort(
            "Instance Created", principal.id, instance.id,
            f"Instance \"{instance.name}\" created with {instance.cpu} CPU, {instance.ram}MB RAM, "
            f"{instance.storage}GB storage",
        )
        logger.info("Instance %s (%s) created by principal %s", instance.id, address, principal.id)
        return {"instance": instance_to_dict(instance), "warnings": warnings + self._reconcile_best_effort()}

    def get_instance(self, principal: Principal, instance_id: int) -> Dict[str, Any]:
        """
        ID로 인스턴스를 조회합니다.

        Raises:
            InstanceNotFoundError: 인스턴스가 존재하지 않을 때.
            ForbiddenError: 소유자도 관리자도 아닐 때.
        """
        instance = self._find_authorized(principal, instance_id, Action.INSTANCE_READ)
        return instance_to_dict(instance)

    def list_instances(self, principal: Principal, status: Optional[str] = None,
                       page: int = 1, limit: int = 10) -> Dict[str, Any]:
        """
        인스턴스 목록을 최근 생성 순으로 조회합니다. 일반 사용자는 자신이 소유한 인스턴스만 보입니다.

        Raises:
            InvalidRequestError: 알 수 없는 상태로 필터링했을 때.
        """
        if status is not None and status not in models.STATUSES:
            raise InvalidRequestError(f"Unknown status '{status}'.")
        page, limit, offset = normalize_page(page, limit)
        decision = enforce(principal, Action.INSTANCE_LIST)
        owner_id = principal.id if decision.scope is Scope.OWNED else None
        instances, total = self.instance_repo.list_page(owner_id, status, offset, limit)
        return build_page([instance_to_dict(i) for i in instances], total, page, limit)

    def update_instance(self, principal: Principal, instance_id: int, name: Optional[str] = None,
                        cpu: Optional[int] = None, ram: Optional[int] = None,
                        storage: Optional[int] = None) -> Dict[str, Any]:
        """
        인스턴스의 이름과 자원 크기를 변경합니다. 어떤 상태에서도 가능하며 상태는 바뀌지 않습니다.

        Raises:
            InstanceNotFoundError: 인스턴스가 존재하지 않을 때.
            ForbiddenError: 소유자도 관리자도 아닐 때.
            InvalidRangeError: 자원 값이 허용 범위를 벗어났을 때.
            ConcurrentUpdateError: 다른 요청이 먼저 인스턴스를 변경했을 때.
        """
        instance = self._find_authorized(principal, instance_id, Action.INSTANCE_UPDATE)
        changes = check_instance_resources(cpu, ram, storage)
        if name is not None:
            changes["name"] = check_name("name", name)

        previous_name = instance.name
        for field, value in changes.items():
            setattr(instance, field, value)
        instance = self._save(instance)

        warnings = self._record_best_effort(
            "Instance Updated", principal.id, instance.id,
            f"Instance \"{previous_name}\" updated: {', '.join(sorted(changes)) or 'no changes'}",
        )
        return {"instance": instance_to_dict(instance), "warnings": warnings + self._reconcile_best_effort()}

    def start_instance(self, principal: Principal, instance_id: int) -> Dict[str, Any]:
        """stopped/paused/error -> running. 이미 실행 중이면 AlreadyRunningError."""
        return self._transition(principal, instance_id, "start")

    def stop_instance(self, principal: Principal, instance_id: int) -> Dict[str, Any]:
        """running/paused/error -> stopped. 이미 정지 상태면 AlreadyStoppedError."""
        return self._transition(principal, instance_id, "stop")

    def restart_instance(self, principal: Principal, instance_id: int) -> Dict[str, Any]:
        """running -> running. 실행 중이 아니면 NotRunningError."""
        return self._transition(principal, instance_id, "restart")

    def delete_instance(self, principal: Principal, instance_id: int) -> Dict[str, Any]:
        """
        인스턴스를 영구 삭제합니다. 어떤 상태에서도 가능하며, 인스턴스의 스냅샷도 함께 삭제됩니다.

        Raises:
            InstanceNotFoundError: 인스턴스가 존재하지 않을 때.
            ForbiddenError: 소유자도 관리자도 아닐 때.
            ConcurrentUpdateError: 다른 요청이 먼저 인스턴스를 변경했을 때.
        """
        instance = self._find_authorized(principal, instance_id, Action.INSTANCE_DELETE)
        snapshot_count = self.snapshot_repo.count_by_instance_id(instance.id)
        deleted = instance_to_dict(instance)

        try:
            self.instance_repo.delete(instance)
        except StaleDataError as e:
            raise ConcurrentUpdateError(f"Instance '{instance_id}' was modified concurrently; retry the request.") from e

        warnings = self._record_best_effort(
            "Instance Deleted", principal.id, deleted["id"],
            f"Instance \"{deleted['name']}\" deleted along with {snapshot_count} snapshot(s)",
        )
        logger.info("Instance %s deleted by principal %s", deleted["id"], principal.id)
        return {"instance": deleted, "warnings": warnings + self._reconcile_best_effort()}

    def _transition(self, principal: Principal, instance_id: int, operation: str) -> Dict[str, Any]:
        allowed_from, target_status, rejection, audit_action = TRANSITIONS[operation]
        instance = self._find_authorized(principal, instance_id, Action.INSTANCE_CONTROL)
        if instance.status not in allowed_from:
            raise rejection(REJECT_MESSAGES[operation])

        previous_status = instance.status
        instance.status = target_status
        instance = self._save(instance)

        warnings = self._record_best_effort(
            audit_action, principal.id, instance.id,
            f"Instance \"{instance.name}\" {operation} succeeded ({previous_status} -> {target_status})",
        )
        logger.info("Instance %s: %s -> %s", instance.id, previous_status, target_status)
        return {"instance": instance_to_dict(instance), "warnings": warnings + self._reconcile_best_effort()}

    def _find_authorized(self, principal: Principal, instance_id: int, action: Action) -> models.Instance:
        # 존재 여부를 먼저 확인한 뒤 소유권을 확인한다
        instance = self.instance_repo.find_by_id(instance_id)
        if not instance:
            raise InstanceNotFoundError(f"Instance with id '{instance_id}' not found.")
        enforce(principal, action, Target(owner_id=instance.owner_id))
        return instance

    def _save(self, instance: models.Instance) -> models.Instance:
        instance_id = instance.id
        try:
            return self.instance_repo.update(instance)
        except StaleDataError as e:
            raise ConcurrentUpdateError(f"Instance '{instance_id}' was modified concurrently; retry the request.") from e

    def _record_best_effort(self, action: str, principal_id: int, instance_id: int, details: str) -> List[str]:
        # 호출 시점에 인스턴스 변경은 이미 커밋되어 있다
        try:
            self.audit_service.record(action, principal_id, instance_id, details)
        except SQLAlchemyError:
            logger.exception("Audit append '%s' for instance %s failed after commit", action, instance_id)
            return [f"Audit entry '{action}' was not recorded."]
        return []

    def _reconcile_best_effort(self) -> List[str]:
        try:
            self.ledger_service.reconcile()
        except ServiceError as e:
            logger.warning("Ledger reconcile after instance change failed: %s", e.message)
            return [f"Capacity ledger was not reconciled: {e.message}"]
        except Exception:
            logger.exception("Unexpected error while reconciling capacity ledger")
            return ["Capacity ledger was not reconciled: internal error."]
        return []
