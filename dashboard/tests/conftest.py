"""
dashboard/tests/conftest.py

Shared fixtures.
"""

import pytest

from dashboard.tests.helpers import FakeIssuer


@pytest.fixture
def fake_issuer():
    return FakeIssuer()
