"""Shared fixtures."""

import pytest

from records import build_record


@pytest.fixture
def make_record():
    return build_record
