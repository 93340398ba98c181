# vps_panel/utils/validators.py
import ipaddress
from typing import Any, Dict, Optional, Tuple

from vps_panel.services.exceptions import InvalidRangeError, InvalidRequestError

# (최소, 최대) 범위. 단위는 CPU 코어, RAM MB, 스토리지 GB.
INSTANCE_BOUNDS: Dict[str, Tuple[int, int]] = {
    "cpu": (1, 32),
    "ram": (512, 32768),
    "storage": (10, 2048),
}

LEDGER_TOTAL_BOUNDS: Dict[str, Tuple[int, int]] = {
    "total_cpu": (1, 128),
    "total_ram": (1024, 131072),
    "total_storage": (100, 10240),
}

NAME_LENGTH = (3, 100)


def require_int(field: str, value: Any) -> int:
    # bool은 int의 하위 타입이므로 따로 거른다
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidRequestError(f"'{field}' must be an integer.")
    return value


def check_range(field: str, value: Any, bounds: Tuple[int, int]) -> int:
    """정수 값이 [최소, 최대] 범위 안에 있는지 검사하고, 벗어나면 InvalidRangeError를 발생시킵니다."""
    value = require_int(field, value)
    low, high = bounds
    if value < low or value > high:
        raise InvalidRangeError(f"'{field}' must be between {low} and {high}, got {value}.")
    return value


def check_non_negative(field: str, value: Any) -> int:
    value = require_int(field, value)
    if value < 0:
        raise InvalidRangeError(f"'{field}' must not be negative, got {value}.")
    return value


def check_name(field: str, value: Any, length: Tuple[int, int] = NAME_LENGTH) -> str:
    if not isinstance(value, str):
        raise InvalidRequestError(f"'{field}' must be a string.")
    value = value.strip()
    low, high = length
    if len(value) < low or len(value) > high:
        raise InvalidRangeError(f"'{field}' must be {low}-{high} characters long.")
    return value


def check_ipv4(value: Any) -> str:
    """IPv4 주소 형식을 검사하고 정규화된 문자열을 반환합니다."""
    if not isinstance(value, str):
        raise InvalidRequestError("'address' must be a string.")
    try:
        return str(ipaddress.IPv4Address(value.strip()))
    except ipaddress.AddressValueError as e:
        raise InvalidRequestError(f"'{value}' is not a valid IPv4 address.") from e


def check_instance_resources(cpu: Optional[Any], ram: Optional[Any], storage: Optional[Any]) -> Dict[str, int]:
    """None이 아닌 자원 필드만 검사하여 {필드: 값} 딕셔너리로 돌려줍니다."""
    checked = {}
    for field, value in (("cpu", cpu), ("ram", ram), ("storage", storage)):
        if value is not None:
            checked[field] = check_range(field, value, INSTANCE_BOUNDS[field])
    return checked
