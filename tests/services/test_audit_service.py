# tests/services/test_audit_service.py
import pytest
from unittest.mock import MagicMock
from datetime import datetime

from vps_panel.services.audit_service import AuditFilter, AuditService
from vps_panel.services.authorization import Principal
from vps_panel.services.exceptions import *
from vps_panel.repositories.interfaces import (
    AuditQuery, IAuditRepository, IInstanceRepository, IUserRepository
)
from vps_panel.database import models

ADMIN = Principal(id=1, role="admin")
USER = Principal(id=2, role="user")

# ===================================================================
#  Fixture 설정
# ===================================================================

@pytest.fixture
def mock_audit_repo() -> MagicMock:
    repo = MagicMock(spec=IAuditRepository)
    repo.create.side_effect = lambda entry: entry
    repo.list_page.return_value = ([], 0)
    repo.count_grouped.return_value = []
    return repo

@pytest.fixture
def mock_instance_repo() -> MagicMock:
    return MagicMock(spec=IInstanceRepository)

@pytest.fixture
def mock_user_repo() -> MagicMock:
    return MagicMock(spec=IUserRepository)

@pytest.fixture
def audit_service(mock_audit_repo, mock_instance_repo, mock_user_repo) -> AuditService:
    return AuditService(mock_audit_repo, mock_instance_repo, mock_user_repo)

# ===================================================================
#  기록(record) 테스트
# ===================================================================
class TestRecord:
    def test_record_truncates_long_fields(self, audit_service, mock_audit_repo):
        entry = audit_service.record("A" * 150, 2, 10, "d" * 600)

        assert len(entry.action) == 100
        assert len(entry.details) == 500
        mock_audit_repo.create.assert_called_once()

    def test_record_without_instance(self, audit_service):
        entry = audit_service.record("Resources Updated", 1)

        assert entry.instance_id is None
        assert entry.details is None


# ===================================================================
#  조회 범위(scope) 테스트
# ===================================================================
class TestListScope:
    def test_user_scope_is_owned_instances_or_own_entries(self, audit_service, mock_audit_repo, mock_instance_repo):
        """일반 사용자는 소유한 인스턴스의 로그와 자신이 남긴 로그만 조회합니다."""
        # === Arrange ===
        mock_instance_repo.list_ids_by_owner.return_value = [10, 11]

        # === Act ===
        audit_service.list_entries(USER, AuditFilter(action="instance"), page=1, limit=20)

        # === Assert ===
        query = mock_audit_repo.list_page.call_args.args[0]
        assert query == AuditQuery(action="instance", scope_instance_ids=(10, 11), scope_principal_id=USER.id)
        mock_instance_repo.list_ids_by_owner.assert_called_once_with(USER.id)

    def test_admin_scope_is_unrestricted(self, audit_service, mock_audit_repo, mock_instance_repo):
        audit_service.list_entries(ADMIN)

        query = mock_audit_repo.list_page.call_args.args[0]
        assert query.scope_principal_id is None
        mock_instance_repo.list_ids_by_owner.assert_not_called()

    def test_user_cannot_filter_by_other_principal(self, audit_service, mock_audit_repo):
        with pytest.raises(ForbiddenError):
            audit_service.list_entries(USER, AuditFilter(principal_id=ADMIN.id))
        mock_audit_repo.list_page.assert_not_called()

    def test_user_may_filter_by_self(self, audit_service, mock_instance_repo):
        mock_instance_repo.list_ids_by_owner.return_value = []
        audit_service.list_entries(USER, AuditFilter(principal_id=USER.id))

    def test_inverted_time_range_rejected(self, audit_service):
        with pytest.raises(InvalidRangeError):
            audit_service.list_entries(ADMIN, AuditFilter(start=datetime(2024, 2, 1), end=datetime(2024, 1, 1)))

    def test_list_includes_action_counts(self, audit_service, mock_audit_repo):
        mock_audit_repo.count_grouped.return_value = [{"key": "Instance Created", "count": 2}]

        result = audit_service.list_entries(ADMIN)

        assert result["stats"]["total_actions"] == 2


def make_entry(entry_id=5, principal_id=3, instance_id=10):
    return models.AuditEntry(id=entry_id, action="Instance Started", principal_id=principal_id,
                             instance_id=instance_id, timestamp=datetime(2024, 1, 1), details=None)


class TestGetEntry:
    def test_entry_on_owned_instance_is_visible(self, audit_service, mock_audit_repo, mock_instance_repo):
        """다른 주체가 남겼더라도 자신의 인스턴스에 대한 항목은 볼 수 있습니다."""
        # === Arrange ===
        mock_audit_repo.find_by_id.return_value = make_entry(principal_id=ADMIN.id)
        mock_instance_repo.find_by_id.return_value = models.Instance(id=10, owner_id=USER.id, name="x", status="running")

        # === Act ===
        result = audit_service.get_entry(USER, 5)

        # === Assert ===
        assert result["id"] == 5
        mock_instance_repo.find_by_id.assert_called_once_with(10)

    def test_own_entry_on_deleted_instance_is_visible(self, audit_service, mock_audit_repo, mock_instance_repo):
        mock_audit_repo.find_by_id.return_value = make_entry(principal_id=USER.id)
        mock_instance_repo.find_by_id.return_value = None

        assert audit_service.get_entry(USER, 5)["principal_id"] == USER.id

    def test_foreign_entry_is_forbidden(self, audit_service, mock_audit_repo, mock_instance_repo):
        mock_audit_repo.find_by_id.return_value = make_entry(principal_id=3)
        mock_instance_repo.find_by_id.return_value = models.Instance(id=10, owner_id=3, name="x", status="running")

        with pytest.raises(ForbiddenError):
            audit_service.get_entry(USER, 5)

    def test_fleet_entry_by_admin_hidden_from_user(self, audit_service, mock_audit_repo, mock_instance_repo):
        mock_audit_repo.find_by_id.return_value = make_entry(principal_id=ADMIN.id, instance_id=None)

        with pytest.raises(ForbiddenError):
            audit_service.get_entry(USER, 5)
        assert audit_service.get_entry(ADMIN, 5)["instance_id"] is None
        mock_instance_repo.find_by_id.assert_not_called()

    def test_missing_entry(self, audit_service, mock_audit_repo):
        mock_audit_repo.find_by_id.return_value = None

        with pytest.raises(AuditEntryNotFoundError):
            audit_service.get_entry(USER, 99)


class TestInstanceAndPrincipalEntries:
    def test_instance_entries_not_found_before_forbidden(self, audit_service, mock_instance_repo):
        mock_instance_repo.find_by_id.return_value = None

        with pytest.raises(InstanceNotFoundError):
            audit_service.list_instance_entries(USER, 99)

    def test_instance_entries_of_foreign_instance(self, audit_service, mock_instance_repo):
        mock_instance_repo.find_by_id.return_value = models.Instance(id=10, owner_id=3, name="x", status="stopped")

        with pytest.raises(ForbiddenError):
            audit_service.list_instance_entries(USER, 10)

    def test_principal_entries_admin_only(self, audit_service):
        with pytest.raises(ForbiddenError):
            audit_service.list_principal_entries(USER, USER.id)

    def test_principal_entries_missing_user(self, audit_service, mock_user_repo):
        mock_user_repo.find_by_id.return_value = None

        with pytest.raises(UserNotFoundError):
            audit_service.list_principal_entries(ADMIN, 42)


class TestAggregates:
    def test_grouped_results_sorted_by_count_desc(self, audit_service, mock_audit_repo):
        mock_audit_repo.count_grouped.return_value = [
            {"key": "Instance Started", "count": 1},
            {"key": "Instance Created", "count": 5},
        ]

        result = audit_service.aggregate_by_action(ADMIN)

        assert [row["count"] for row in result] == [5, 1]

    def test_aggregate_by_principal_admin_only(self, audit_service):
        with pytest.raises(ForbiddenError):
            audit_service.aggregate_by_principal(USER)

    def test_stats_hides_principal_stats_from_user(self, audit_service, mock_instance_repo):
        mock_instance_repo.list_ids_by_owner.return_value = []

        stats = audit_service.stats(USER)

        assert stats["principal_stats"] is None
        assert stats["total"] == 0

    def test_stats_for_admin(self, audit_service, mock_audit_repo):
        stats = audit_service.stats(ADMIN)

        assert stats["principal_stats"] == []
        mock_audit_repo.list_page.assert_called_once()
