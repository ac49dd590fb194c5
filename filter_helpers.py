from enum import Enum
from typing import Optional, TypeVar

E = TypeVar("E", bound=Enum)


def blank_to_none(value: Optional[str]) -> Optional[str]:
    if value == "":
        return None
    return value


def normalize_status(status: Optional[str], enum_cls: type[E]) -> Optional[E]:
    # unknown values mean "no filter", same as the list pages always did
    if not status:
        return None
    try:
        return enum_cls(status)
    except ValueError:
        return None


def normalize_limit(limit: int, *, min_value: int = 1, max_value: int = 500) -> int:
    if limit < min_value:
        return min_value
    if limit > max_value:
        return max_value
    return limit


def normalize_offset(offset: int) -> int:
    if offset < 0:
        return 0
    return offset
