import pytest

from shipyard.settings import get_backend_settings, get_pipeline_settings, get_router_settings


@pytest.fixture(autouse=True)
def fresh_settings():
    """Settings are cached per process; tests that touch the environment need a clean read."""
    for accessor in (get_backend_settings, get_router_settings, get_pipeline_settings):
        accessor.cache_clear()
    yield
    for accessor in (get_backend_settings, get_router_settings, get_pipeline_settings):
        accessor.cache_clear()


@pytest.fixture
def compose_config():
    return {
        "name": "demo",
        "services": {
            "backend": {
                "image": "registry.gitlab.com/demo/app/backend:latest",
                "build": {"context": "backend"},
                "ports": ["3000:3000"],
            },
            "frontend": {
                "image": "registry.gitlab.com/demo/app/frontend:latest",
                "build": {"context": "frontend"},
                "ports": ["80:80"],
                "depends_on": ["backend"],
            },
        },
    }
