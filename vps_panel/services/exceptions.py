# vps_panel/services/exceptions.py


class ServiceError(Exception):
    """모든 서비스 계층 예외의 기반 클래스. kind는 외부에 노출되는 안정적인 오류 종류입니다."""
    kind = "InternalError"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


# --- Auth Exceptions ---
class UnauthenticatedError(ServiceError):
    """유효한 신원 정보가 없을 때"""
    kind = "Unauthenticated"


class TokenInvalidError(UnauthenticatedError):
    """토큰이 유효하지 않거나 없을 때"""
    pass


class AuthenticationError(UnauthenticatedError):
    """사용자 자격 증명 실패 시"""
    pass


class ForbiddenError(ServiceError):
    """인증은 되었지만 해당 작업 권한이 없을 때"""
    kind = "Forbidden"


# --- Not Found Exceptions ---
class NotFoundError(ServiceError):
    kind = "NotFound"


class InstanceNotFoundError(NotFoundError):
    """인스턴스를 찾을 수 없을 때"""
    pass


class SnapshotNotFoundError(NotFoundError):
    """스냅샷을 찾을 수 없을 때"""
    pass


class UserNotFoundError(NotFoundError):
    """사용자를 찾을 수 없을 때"""
    pass


class AuditEntryNotFoundError(NotFoundError):
    """감사 로그 항목을 찾을 수 없을 때"""
    pass


# --- Creation/Validation Exceptions ---
class InvalidRequestError(ServiceError):
    """요청 본문이나 파라미터 형식이 잘못되었을 때"""
    kind = "InvalidRequest"


class InvalidRangeError(ServiceError):
    """숫자 필드가 허용 범위를 벗어났을 때"""
    kind = "InvalidRange"


class DuplicateAddressError(ServiceError):
    """인스턴스 주소가 이미 사용 중일 때"""
    kind = "DuplicateAddress"


class DuplicateIdentityError(ServiceError):
    """사용자 이름이나 이메일이 이미 존재할 때"""
    kind = "DuplicateIdentity"


class UserHasInstancesError(ServiceError):
    """인스턴스를 소유한 사용자를 삭제하려고 할 때"""
    kind = "Conflict"


# --- Lifecycle Exceptions ---
class InvalidStateTransitionError(ServiceError):
    kind = "InvalidStateTransition"


class AlreadyRunningError(InvalidStateTransitionError):
    """이미 실행 중인 인스턴스를 시작하려고 할 때"""
    pass


class AlreadyStoppedError(InvalidStateTransitionError):
    """이미 정지된 인스턴스를 정지하려고 할 때"""
    pass


class NotRunningError(InvalidStateTransitionError):
    """실행 중이 아닌 인스턴스를 재시작하려고 할 때"""
    pass


class InstanceNotRunningError(InvalidStateTransitionError):
    """스냅샷 생성 시 인스턴스가 실행 중이 아닐 때"""
    pass


class InstanceNotStoppedError(InvalidStateTransitionError):
    """스냅샷 복원 시 인스턴스가 정지 상태가 아닐 때"""
    pass


# --- Ledger / Concurrency Exceptions ---
class NotConfiguredError(ServiceError):
    """리소스 원장이 아직 없는데 재계산을 요청했을 때"""
    kind = "NotConfigured"


class ConcurrentUpdateError(ServiceError):
    """다른 요청이 먼저 같은 레코드를 변경했을 때 (낙관적 잠금 실패)"""
    kind = "Conflict"
