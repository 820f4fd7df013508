import pytest

from app.capture import config


@pytest.fixture(autouse=True)
def _restore_config_globals():
    """Restore app.capture.config after each test; runtime validation mutates it via setattr."""
    saved = {name: value for name, value in vars(config).items() if name.isupper()}
    yield
    for name, value in saved.items():
        setattr(config, name, value)
