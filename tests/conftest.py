import importlib

import pytest

from baseapp.app import Application
from baseapp.db import MemStore


@pytest.fixture
def load_app_module(monkeypatch):
    import baseapp.app as app_mod

    def _loader(**env):
        for key, value in env.items():
            monkeypatch.setenv(key, str(value))
        return importlib.reload(app_mod)

    yield _loader
    monkeypatch.undo()
    importlib.reload(app_mod)


@pytest.fixture
def app(tmp_path):
    application = Application.open(str(tmp_path / "data"), backend="sqlite")
    yield application
    application.close()


@pytest.fixture
def mem_app():
    return Application(MemStore())
