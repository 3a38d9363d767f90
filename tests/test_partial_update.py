"""
Partial-update builder tests.
"""
from __future__ import annotations

import pytest

from subhook.core.partial_update import UnknownFieldError, build_partial_update


def test_known_fields_pass_through() -> None:
    values = build_partial_update({"status": "ACTIVE", "renewal_failures": 0})

    assert values == {"status": "ACTIVE", "renewal_failures": 0}


def test_unknown_field_is_rejected() -> None:
    with pytest.raises(UnknownFieldError) as exc_info:
        build_partial_update({"status": "ACTIVE", "statsu": "oops", "version": 3})

    assert "statsu" in str(exc_info.value)
    assert "version" in str(exc_info.value)


def test_empty_update_is_rejected() -> None:
    with pytest.raises(ValueError):
        build_partial_update({})


def test_custom_allow_list() -> None:
    assert build_partial_update({"a": 1}, allowed={"a", "b"}) == {"a": 1}
