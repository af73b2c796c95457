from __future__ import annotations

import pytest

from tests.helpers.harness import SessionHarness


@pytest.fixture
def signed_in(tmp_path):
    """Initialized controller with user `u1` signed in under the default policy."""
    h = SessionHarness.make(tmp_path=tmp_path)
    h.controller.initialize()
    h.sign_in()
    yield h
    h.controller.close()
