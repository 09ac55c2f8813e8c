from __future__ import annotations

from datetime import datetime

from fleet_scheduler.core import ulid_helper


def test_generate_ulid_is_valid_and_unique() -> None:
    first = ulid_helper.generate_ulid()
    second = ulid_helper.generate_ulid()

    assert first != second
    assert len(first) == 26
    assert ulid_helper.is_valid_ulid(first)


def test_parse_ulid_valid_and_invalid() -> None:
    assert ulid_helper.parse_ulid(ulid_helper.generate_ulid()) is not None
    assert ulid_helper.parse_ulid("not-a-ulid") is None


def test_get_timestamp_from_ulid() -> None:
    assert isinstance(ulid_helper.get_timestamp_from_ulid(ulid_helper.generate_ulid()), datetime)
    assert ulid_helper.get_timestamp_from_ulid("bad") is None
