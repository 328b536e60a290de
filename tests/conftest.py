import os

import pytest


@pytest.fixture(autouse=True)
def test_clear_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("ZAPBATCH_"):
            monkeypatch.delenv(name)
