import sys
import os
import pytest

# Add the project root directory to the python path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))


@pytest.fixture(autouse=True)
def fresh_settings():
    from app import app, get_settings, _openai_clients

    get_settings.cache_clear()
    _openai_clients.clear()
    yield
    app.dependency_overrides.clear()
    get_settings.cache_clear()
    _openai_clients.clear()
