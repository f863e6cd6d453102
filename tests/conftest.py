import pytest

from routerkit import ROUTER_ENV_VARS, base_environ

from access_router.config import load_config


@pytest.fixture
def router_config():
    return load_config(environ=base_environ())


@pytest.fixture
def router_env(monkeypatch):
    for name in ROUTER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    for key, val in base_environ().items():
        monkeypatch.setenv(key, val)
    return monkeypatch
