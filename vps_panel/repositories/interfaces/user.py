from abc import ABC, abstractmethod
from typing import List, Optional, Tuple
from vps_panel.database import models

class IUserRepository(ABC):
    @abstractmethod
    def create(self, user_model: models.User) -> models.User:
        """새로운 사용자를 데이터베이스에 생성합니다."""
        pass

    @abstractmethod
    def find_by_id(self, user_id: int) -> Optional[models.User]:
        """고유 ID로 특정 사용자를 조회합니다."""
        pass

    @abstractmethod
    def find_by_username(self, username: str) -> Optional[models.User]:
        """사용자 이름으로 특정 사용자를 조회합니다."""
        pass

    @abstractmethod
    def find_by_email(self, email: str) -> Optional[models.User]:
        """이메일로 특정 사용자를 조회합니다."""
        pass

    @abstractmethod
    def list_page(self, offset: int, limit: int) -> Tuple[List[models.User], int]:
        """최근 가입 순으로 사용자 한 페이지와 전체 개수를 조회합니다."""
        pass

    @abstractmethod
    def count(self) -> int:
        pass

    @abstractmethod
    def update(self, user: models.User) -> models.User:
        """변경된 사용자 정보를 커밋합니다."""
        pass

    @abstractmethod
    def delete(self, user: models.User) -> bool:
        """특정 사용자를 데이터베이스에서 삭제합니다."""
        pass
