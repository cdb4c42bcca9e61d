"""Portable SQL types that work across PostgreSQL and SQLite.

Enumerations are persisted as their plain string value so that rows stay
readable from either dialect and from the remote backend's payloads.
"""

import enum

import sqlalchemy as sa
from sqlalchemy import TypeDecorator


class ValueEnum(TypeDecorator):
    """Store a ``str``-valued :class:`enum.Enum` as ``VARCHAR`` of its value."""

    impl = sa.String
    cache_ok = True

    def __init__(self, enum_class: type[enum.Enum], length: int = 20):
        super().__init__(length)
        self.enum_class = enum_class
        self.length = length

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        # Accept raw strings so predicate queries can compare against values
        return self.enum_class(value).value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return self.enum_class(value)
