"""Shared schema helpers."""

from enum import Enum
from typing import TypeVar

from visitflow.core.exceptions import InvalidState

E = TypeVar("E", bound=Enum)


def parse_status(enum_cls: type[E], raw: object) -> E:
    """
    Resolve a status against a closed enumeration.

    Accepts an enum member, its exact value (``in_progress``) or its exact
    name (``IN_PROGRESS``). Anything else is rejected.

    Raises:
        InvalidState: If the value is not a member of the enumeration
    """
    if isinstance(raw, enum_cls):
        return raw

    if isinstance(raw, str):
        for member in enum_cls:
            if raw == member.value or raw == member.name:
                return member

    allowed = ", ".join(str(member.value) for member in enum_cls)
    raise InvalidState(f"Unknown {enum_cls.__name__} '{raw}'. Expected one of: {allowed}")
