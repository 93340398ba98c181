import logging
import re
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError

from vps_panel.database import models
from vps_panel.repositories.interfaces import IInstanceRepository, IUserRepository
from vps_panel.services.audit_service import AuditService
from vps_panel.services.authorization import Action, Principal, Target, enforce
from vps_panel.services.exceptions import (
    AuthenticationError, DuplicateIdentityError, InvalidRangeError, InvalidRequestError,
    TokenInvalidError, UserHasInstancesError, UserNotFoundError
)
from vps_panel.utils.pagination import build_page, normalize_page
from vps_panel.utils.passwords import hash_password, verify_password
from vps_panel.utils.validators import check_name

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
USERNAME_LENGTH = (3, 50)
PASSWORD_MIN_LENGTH = 6


def user_to_dict(user: models.User) -> Dict[str, Any]:
    """비밀번호 해시를 제외한 사용자 정보."""
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "role": user.role,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


class IdentityService:
    """사용자(Principal) 관리와 인증 토큰 발급/검증을 제공합니다."""
    _token_cache = {}

    def __init__(self, user_repo: IUserRepository, instance_repo: IInstanceRepository,
                 audit_service: AuditService, token_ttl_minutes: int = 60):
        """
        IdentityService를 초기화합니다.

        Args:
            user_repo: 사용자 데이터에 접근하기 위한 리포지토리.
            instance_repo: 인스턴스 데이터에 접근하기 위한 리포지토리 (사용자 삭제 시 검증용).
            audit_service: 사용자 변경 작업을 기록할 감사 로그 서비스.
            token_ttl_minutes: 발급한 토큰의 유효 시간(분).
        """
        self.user_repo = user_repo
        self.instance_repo = instance_repo
        self.audit_service = audit_service
        self.token_ttl = timedelta(minutes=token_ttl_minutes)

    def register(self, username: str, email: str, password: str) -> Dict[str, Any]:
        """
        새로운 일반 사용자를 생성합니다. 자체 가입으로는 항상 'user' 역할만 받을 수 있습니다.

        Raises:
            DuplicateIdentityError: 동일한 사용자 이름이나 이메일이 이미 존재할 때.
            InvalidRangeError: 사용자 이름/비밀번호 길이가 맞지 않을 때.
            InvalidRequestError: 이메일 형식이 잘못되었을 때.
        """
        user = self._create_user(username, email, password, models.ROLE_USER)
        return user_to_dict(user)

    def ensure_admin(self, username: str, email: str, password: str) -> Dict[str, Any]:
        """부팅 시 관리자 계정이 없으면 생성합니다. 이미 있으면 그대로 반환합니다."""
        existing = self.user_repo.find_by_username(username)
        if existing:
            return user_to_dict(existing)
        admin = self._create_user(username, email, password, models.ROLE_ADMIN)
        logger.info("Bootstrap admin account '%s' created.", admin.username)
        return user_to_dict(admin)

    def authenticate(self, username: str, password: str) -> Dict[str, Any]:
        """
        자격증명을 검증하고, 성공 시 인증 토큰을 발급합니다.

        Raises:
            AuthenticationError: 사용자가 없거나 비밀번호가 틀렸을 때.
        """
        user = self.user_repo.find_by_username(username) if isinstance(username, str) else None
        if not user or not isinstance(password, str) or not verify_password(password, user.password_hash):
            raise AuthenticationError("Invalid username or password.")

        token = str(uuid.uuid4())
        expires_at = datetime.now() + self.token_ttl
        self._token_cache[token] = {
            'user_id': user.id,
            'expires_at': expires_at
        }
        return {"token": token, "expires_at": expires_at.isoformat(), "user": user_to_dict(user)}

    def validate_token(self, token: str) -> Principal:
        """
        인증 토큰의 유효성을 검증하고, 현재 역할이 반영된 Principal을 반환합니다.

        Raises:
            TokenInvalidError: 토큰을 찾을 수 없거나 만료되었거나, 사용자가 삭제되었을 때.
        """
        token_data = self._token_cache.get(token)
        if not token_data:
            raise TokenInvalidError("Token not found or invalid.")

        if datetime.now() > token_data['expires_at']:
            self._token_cache.pop(token, None)
            raise TokenInvalidError("Token has expired.")

        # 토큰 발급 후 역할이 바뀌었거나 계정이 삭제되었을 수 있으므로 다시 조회한다
        user = self.user_repo.find_by_id(token_data['user_id'])
        if not user:
            self._token_cache.pop(token, None)
            raise TokenInvalidError("User not found.")
        return Principal(id=user.id, role=user.role)

    def revoke_token(self, token: str) -> bool:
        return self._token_cache.pop(token, None) is not None

    def get_profile(self, principal: Principal) -> Dict[str, Any]:
        return self.get_user(principal, principal.id)

    def list_users(self, principal: Principal, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        """모든 사용자의 목록을 조회합니다. (관리자 전용, 비밀번호 제외)"""
        enforce(principal, Action.USER_LIST)
        page, limit, offset = normalize_page(page, limit)
        users, total = self.user_repo.list_page(offset, limit)
        return build_page([user_to_dict(u) for u in users], total, page, limit)

    def get_user(self, principal: Principal, user_id: int) -> Dict[str, Any]:
        """
        ID로 특정 사용자를 조회합니다. 자기 자신 또는 관리자만 조회할 수 있습니다.

        Raises:
            UserNotFoundError: 해당 ID의 사용자를 찾을 수 없을 때.
            ForbiddenError: 다른 사용자의 정보를 조회하려 할 때.
        """
        user = self._find_user(user_id)
        enforce(principal, Action.USER_READ, Target(owner_id=user.id))
        return user_to_dict(user)

    def update_user(self, principal: Principal, user_id: int, username: Optional[str] = None,
                    email: Optional[str] = None, role: Optional[str] = None) -> Dict[str, Any]:
        """
        사용자 정보를 수정합니다. 역할(role) 변경은 관리자만 할 수 있습니다.

        Raises:
            UserNotFoundError: 해당 ID의 사용자를 찾을 수 없을 때.
            ForbiddenError: 다른 사용자를 수정하거나, 관리자가 아닌데 역할을 바꾸려 할 때.
            DuplicateIdentityError: 바꾸려는 사용자 이름이나 이메일이 이미 사용 중일 때.
        """
        user = self._find_user(user_id)
        enforce(principal, Action.USER_UPDATE, Target(owner_id=user.id))

        changes = {}
        if role is not None and role != user.role:
            enforce(principal, Action.USER_CHANGE_ROLE, Target(owner_id=user.id))
            if role not in models.ROLES:
                raise InvalidRequestError(f"Unknown role '{role}'.")
            changes["role"] = role
        if username is not None:
            username = check_name("username", username, USERNAME_LENGTH)
            if username != user.username:
                if self.user_repo.find_by_username(username):
                    raise DuplicateIdentityError("Username already exists.")
                changes["username"] = username
        if email is not None:
            email = self._check_email(email)
            if email != user.email:
                if self.user_repo.find_by_email(email):
                    raise DuplicateIdentityError("Email already exists.")
                changes["email"] = email

        for field, value in changes.items():
            setattr(user, field, value)
        try:
            user = self.user_repo.update(user)
        except IntegrityError as e:
            raise DuplicateIdentityError("Username or email already exists.") from e

        if changes:
            self.audit_service.record(
                "User Updated", principal.id,
                details=f"User {user.id} updated: {', '.join(sorted(changes))}",
            )
        return user_to_dict(user)

    def delete_user(self, principal: Principal, user_id: int) -> bool:
        """
        사용자를 삭제합니다. 일반 사용자는 자기 자신만, 관리자는 자신을 제외한 사용자를 삭제할 수 있습니다.
        단, 인스턴스를 소유한 사용자는 삭제할 수 없습니다.

        Raises:
            UserNotFoundError: 해당 ID의 사용자를 찾을 수 없을 때.
            ForbiddenError: 삭제 권한이 없을 때 (관리자의 자기 삭제 포함).
            UserHasInstancesError: 사용자가 인스턴스를 하나 이상 소유하고 있을 때.
        """
        user = self._find_user(user_id)
        enforce(principal, Action.USER_DELETE, Target(owner_id=user.id))

        owned = self.instance_repo.list_ids_by_owner(user.id)
        if owned:
            raise UserHasInstancesError(f"User '{user_id}' still owns {len(owned)} instance(s).")

        username = user.username
        self.user_repo.delete(user)
        self.audit_service.record("User Deleted", principal.id, details=f"User \"{username}\" deleted")
        return True

    def change_password(self, principal: Principal, current_password: str, new_password: str) -> bool:
        """
        자신의 비밀번호를 변경합니다.

        Raises:
            InvalidRequestError: 현재/새 비밀번호가 누락되었을 때.
            AuthenticationError: 현재 비밀번호가 틀렸을 때.
        """
        if not current_password or not new_password:
            raise InvalidRequestError("Current password and new password are required.")
        user = self._find_user(principal.id)
        if not verify_password(current_password, user.password_hash):
            raise AuthenticationError("Current password is incorrect.")
        self._check_password(new_password)

        user.password_hash = hash_password(new_password)
        self.user_repo.update(user)
        self.audit_service.record("Password Changed", principal.id, details=f"User {user.id} changed password")
        return True

    def _create_user(self, username: str, email: str, password: str, role: str) -> models.User:
        username = check_name("username", username, USERNAME_LENGTH)
        email = self._check_email(email)
        self._check_password(password)
        if self.user_repo.find_by_username(username) or self.user_repo.find_by_email(email):
            raise DuplicateIdentityError("User with this email or username already exists.")

        new_user = models.User(username=username, email=email, password_hash=hash_password(password), role=role)
        try:
            return self.user_repo.create(new_user)
        except IntegrityError as e:
            raise DuplicateIdentityError("User with this email or username already exists.") from e

    def _find_user(self, user_id: int) -> models.User:
        user = self.user_repo.find_by_id(user_id)
        if not user:
            raise UserNotFoundError(f"User with id '{user_id}' not found.")
        return user

    def _check_email(self, email: str) -> str:
        if not isinstance(email, str) or not EMAIL_PATTERN.match(email.strip()):
            raise InvalidRequestError("Please enter a valid email.")
        return email.strip().lower()

    def _check_password(self, password: str) -> None:
        if not isinstance(password, str):
            raise InvalidRequestError("'password' must be a string.")
        if len(password) < PASSWORD_MIN_LENGTH:
            raise InvalidRangeError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long.")
