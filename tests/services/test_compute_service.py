# tests/services/test_compute_service.py
import pytest
from unittest.mock import MagicMock, ANY

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from vps_panel.services.compute_service import ComputeService
from vps_panel.services.audit_service import AuditService
from vps_panel.services.ledger_service import CapacityLedgerService
from vps_panel.services.authorization import Principal
from vps_panel.services.exceptions import *
from vps_panel.repositories.interfaces import IInstanceRepository, ISnapshotRepository
from vps_panel.database import models

OWNER = Principal(id=2, role="user")
STRANGER = Principal(id=3, role="user")
ADMIN = Principal(id=1, role="admin")

# ===================================================================
#  테스트를 위한 Fixture 설정
# ===================================================================

@pytest.fixture
def mock_instance_repo() -> MagicMock:
    """IInstanceRepository에 대한 모의(Mock) 객체를 생성하여 반환합니다."""
    repo = MagicMock(spec=IInstanceRepository)
    # 저장 메서드는 전달받은 모델을 그대로 돌려준다
    repo.create.side_effect = lambda instance: instance
    repo.update.side_effect = lambda instance: instance
    return repo

@pytest.fixture
def mock_snapshot_repo() -> MagicMock:
    return MagicMock(spec=ISnapshotRepository)

@pytest.fixture
def mock_audit_service() -> MagicMock:
    return MagicMock(spec=AuditService)

@pytest.fixture
def mock_ledger_service() -> MagicMock:
    return MagicMock(spec=CapacityLedgerService)

@pytest.fixture
def compute_service(mock_instance_repo, mock_snapshot_repo, mock_audit_service, mock_ledger_service) -> ComputeService:
    """테스트에 사용될 ComputeService 인스턴스를 생성하고, 의존성을 주입합니다."""
    return ComputeService(mock_instance_repo, mock_snapshot_repo, mock_audit_service, mock_ledger_service)

def make_instance(status=models.STATUS_STOPPED, owner_id=OWNER.id, **overrides):
    values = dict(id=10, name="web-01", status=status, cpu=2, ram=1024, storage=20,
                  address="10.0.0.10", owner_id=owner_id)
    values.update(overrides)
    return models.Instance(**values)

# ===================================================================
#  create_instance 테스트 스위트
# ===================================================================
class TestCreateInstance:
    ARGS = {"name": "web-01", "cpu": 2, "ram": 1024, "storage": 20, "address": "10.0.0.10"}

    def test_create_instance_success(self, compute_service, mock_instance_repo, mock_audit_service, mock_ledger_service):
        """인스턴스 생성 성공 시나리오 (Happy Path)를 테스트합니다."""
        # === Arrange ===
        # 시나리오: 주소가 아직 사용되지 않음
        mock_instance_repo.find_by_address.return_value = None

        # === Act ===
        result = compute_service.create_instance(OWNER, **self.ARGS)

        # === Assert ===
        instance = result["instance"]
        assert instance["status"] == models.STATUS_STOPPED
        assert instance["owner_id"] == OWNER.id
        assert result["warnings"] == []
        mock_instance_repo.create.assert_called_once_with(ANY)
        mock_audit_service.record.assert_called_once_with("Instance Created", OWNER.id, ANY, ANY)
        mock_ledger_service.reconcile.assert_called_once()

    def test_create_instance_duplicate_address(self, compute_service, mock_instance_repo, mock_audit_service):
        """이미 사용 중인 주소로 생성하면 DuplicateAddressError가 발생합니다."""
        # === Arrange ===
        mock_instance_repo.find_by_address.return_value = make_instance()

        # === Act & Assert ===
        with pytest.raises(DuplicateAddressError):
            compute_service.create_instance(OWNER, **self.ARGS)
        mock_instance_repo.create.assert_not_called()
        mock_audit_service.record.assert_not_called()

    def test_create_instance_duplicate_address_race(self, compute_service, mock_instance_repo):
        """중복 검사 이후 INSERT에서 UNIQUE 제약이 깨지는 경우도 DuplicateAddressError로 변환됩니다."""
        mock_instance_repo.find_by_address.return_value = None
        mock_instance_repo.create.side_effect = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

        with pytest.raises(DuplicateAddressError):
            compute_service.create_instance(OWNER, **self.ARGS)

    @pytest.mark.parametrize("field, value", [
        ("cpu", 0), ("cpu", 33), ("ram", 511), ("ram", 32769), ("storage", 9), ("storage", 2049),
    ])
    def test_create_instance_out_of_range(self, compute_service, mock_instance_repo, field, value):
        args = dict(self.ARGS, **{field: value})
        with pytest.raises(InvalidRangeError):
            compute_service.create_instance(OWNER, **args)
        mock_instance_repo.create.assert_not_called()

    def test_create_instance_invalid_address(self, compute_service, mock_instance_repo):
        with pytest.raises(InvalidRequestError):
            compute_service.create_instance(OWNER, **dict(self.ARGS, address="999.1.1.1"))
        mock_instance_repo.create.assert_not_called()

    def test_reconcile_failure_becomes_warning(self, compute_service, mock_instance_repo, mock_ledger_service):
        """원장 재계산이 실패해도 인스턴스 생성은 유지되고 경고만 반환됩니다."""
        # === Arrange ===
        mock_instance_repo.find_by_address.return_value = None
        mock_ledger_service.reconcile.side_effect = NotConfiguredError("No resource configuration found.")

        # === Act ===
        result = compute_service.create_instance(OWNER, **self.ARGS)

        # === Assert ===
        assert result["instance"]["name"] == "web-01"
        assert len(result["warnings"]) == 1
        assert "No resource configuration found." in result["warnings"][0]

    def test_audit_failure_after_commit_becomes_warning(self, compute_service, mock_instance_repo,
                                                        mock_audit_service, mock_ledger_service):
        """인스턴스가 이미 저장된 뒤 감사 로그 추가가 실패하면 경고로 보고하고 재계산은 계속합니다."""
        # === Arrange ===
        mock_instance_repo.find_by_id.return_value = make_instance(status=models.STATUS_STOPPED)
        mock_audit_service.record.side_effect = OperationalError("INSERT", {}, Exception("database is locked"))

        # === Act ===
        result = compute_service.start_instance(OWNER, 10)

        # === Assert ===
        assert result["instance"]["status"] == models.STATUS_RUNNING
        assert result["warnings"] == ["Audit entry 'Instance Started' was not recorded."]
        mock_instance_repo.update.assert_called_once()
        mock_ledger_service.reconcile.assert_called_once()


# ===================================================================
#  수명 주기(Lifecycle) 테스트 스위트
# ===================================================================
class TestLifecycle:
    @pytest.mark.parametrize("initial", [models.STATUS_STOPPED, models.STATUS_PAUSED, models.STATUS_ERROR])
    def test_start_from_allowed_states(self, compute_service, mock_instance_repo, mock_audit_service, initial):
        mock_instance_repo.find_by_id.return_value = make_instance(status=initial)

        result = compute_service.start_instance(OWNER, 10)

        assert result["instance"]["status"] == models.STATUS_RUNNING
        mock_audit_service.record.assert_called_once_with("Instance Started", OWNER.id, 10, ANY)

    def test_start_running_instance_fails(self, compute_service, mock_instance_repo, mock_audit_service):
        mock_instance_repo.find_by_id.return_value = make_instance(status=models.STATUS_RUNNING)

        with pytest.raises(AlreadyRunningError):
            compute_service.start_instance(OWNER, 10)
        mock_instance_repo.update.assert_not_called()
        mock_audit_service.record.assert_not_called()

    def test_stop_stopped_instance_fails(self, compute_service, mock_instance_repo):
        mock_instance_repo.find_by_id.return_value = make_instance(status=models.STATUS_STOPPED)

        with pytest.raises(AlreadyStoppedError):
            compute_service.stop_instance(OWNER, 10)

    @pytest.mark.parametrize("initial", [models.STATUS_RUNNING, models.STATUS_PAUSED, models.STATUS_ERROR])
    def test_stop_from_allowed_states(self, compute_service, mock_instance_repo, initial):
        mock_instance_repo.find_by_id.return_value = make_instance(status=initial)

        result = compute_service.stop_instance(OWNER, 10)

        assert result["instance"]["status"] == models.STATUS_STOPPED

    def test_restart_keeps_running(self, compute_service, mock_instance_repo, mock_audit_service):
        mock_instance_repo.find_by_id.return_value = make_instance(status=models.STATUS_RUNNING)

        result = compute_service.restart_instance(OWNER, 10)

        assert result["instance"]["status"] == models.STATUS_RUNNING
        mock_audit_service.record.assert_called_once_with("Instance Restarted", OWNER.id, 10, ANY)

    @pytest.mark.parametrize("initial", [models.STATUS_STOPPED, models.STATUS_PAUSED, models.STATUS_ERROR])
    def test_restart_requires_running(self, compute_service, mock_instance_repo, initial):
        mock_instance_repo.find_by_id.return_value = make_instance(status=initial)

        with pytest.raises(NotRunningError):
            compute_service.restart_instance(OWNER, 10)

    def test_concurrent_update_is_reported(self, compute_service, mock_instance_repo, mock_audit_service):
        """다른 요청이 먼저 버전을 올렸다면 ConcurrentUpdateError가 발생하고 감사 로그는 남지 않습니다."""
        mock_instance_repo.find_by_id.return_value = make_instance()
        mock_instance_repo.update.side_effect = StaleDataError("version mismatch")

        with pytest.raises(ConcurrentUpdateError):
            compute_service.start_instance(OWNER, 10)
        mock_audit_service.record.assert_not_called()


# ===================================================================
#  소유권(Ownership) 및 조회 테스트 스위트
# ===================================================================
class TestOwnership:
    def test_stranger_cannot_touch_instance(self, compute_service, mock_instance_repo):
        mock_instance_repo.find_by_id.return_value = make_instance()

        with pytest.raises(ForbiddenError):
            compute_service.delete_instance(STRANGER, 10)
        mock_instance_repo.delete.assert_not_called()

    def test_missing_instance_is_not_found(self, compute_service, mock_instance_repo):
        """존재 여부를 먼저 확인하므로, 없는 인스턴스는 소유자가 아니어도 NotFound입니다."""
        mock_instance_repo.find_by_id.return_value = None

        with pytest.raises(InstanceNotFoundError):
            compute_service.get_instance(STRANGER, 404)

    def test_list_scoped_to_owner_for_user(self, compute_service, mock_instance_repo):
        mock_instance_repo.list_page.return_value = ([make_instance()], 1)

        result = compute_service.list_instances(OWNER, page=1, limit=10)

        assert result["total_count"] == 1
        mock_instance_repo.list_page.assert_called_once_with(OWNER.id, None, 0, 10)

    def test_list_unscoped_for_admin(self, compute_service, mock_instance_repo):
        mock_instance_repo.list_page.return_value = ([], 0)

        compute_service.list_instances(ADMIN, status="running", page=2, limit=5)

        mock_instance_repo.list_page.assert_called_once_with(None, "running", 5, 5)

    def test_list_rejects_unknown_status(self, compute_service):
        with pytest.raises(InvalidRequestError):
            compute_service.list_instances(ADMIN, status="exploded")


# ===================================================================
#  update / delete 테스트 스위트
# ===================================================================
class TestUpdateAndDelete:
    def test_update_resizes_without_changing_status(self, compute_service, mock_instance_repo):
        mock_instance_repo.find_by_id.return_value = make_instance(status=models.STATUS_RUNNING)

        result = compute_service.update_instance(OWNER, 10, cpu=4, name="web-02")

        assert result["instance"]["cpu"] == 4
        assert result["instance"]["name"] == "web-02"
        assert result["instance"]["status"] == models.STATUS_RUNNING

    def test_update_out_of_range_persists_nothing(self, compute_service, mock_instance_repo):
        mock_instance_repo.find_by_id.return_value = make_instance()

        with pytest.raises(InvalidRangeError):
            compute_service.update_instance(OWNER, 10, ram=100000)
        mock_instance_repo.update.assert_not_called()

    def test_delete_records_snapshot_count(self, compute_service, mock_instance_repo, mock_snapshot_repo,
                                           mock_audit_service, mock_ledger_service):
        """삭제 감사 로그에는 함께 삭제된 스냅샷 개수가 기록됩니다."""
        # === Arrange ===
        instance = make_instance(status=models.STATUS_RUNNING)
        mock_instance_repo.find_by_id.return_value = instance
        mock_snapshot_repo.count_by_instance_id.return_value = 3

        # === Act ===
        result = compute_service.delete_instance(ADMIN, 10)

        # === Assert ===
        assert result["instance"]["id"] == 10
        mock_instance_repo.delete.assert_called_once_with(instance)
        args = mock_audit_service.record.call_args.args
        assert args[0] == "Instance Deleted"
        assert "3 snapshot(s)" in args[3]
        mock_ledger_service.reconcile.assert_called_once()
