from datetime import datetime, timezone


def utcnow() -> datetime:
    """DB에 저장하기 위한 naive UTC 시각을 반환합니다."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
