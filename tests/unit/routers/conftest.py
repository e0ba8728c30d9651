"""Router test fixtures: a full app over a temporary database."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient

from marketplace_service.app import create_app
from marketplace_service.config import clear_settings_cache
from marketplace_service.core.lifespan import lifespan
from marketplace_service.core.state import reset_app_state

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

MAX_BODY_SIZE = 4096
MAX_PHOTO_SIZE = 2048


@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with temp database, photo directory and logs."""
    config_content = f"""\
service:
  name: "marketplace"
  version: "0.1.0"
server:
  host: "127.0.0.1"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{tmp_path / "logs"}"
database:
  path: "{tmp_path / "marketplace.db"}"
  timeout_seconds: 5.0
payments:
  platform_fee: 20.00
retry:
  max_attempts: 3
  base_delay_seconds: 0.0
  max_delay_seconds: 0.0
subscriptions:
  poll_interval_seconds: 0.05
  keepalive_interval_seconds: 15
storage:
  photo_path: "{tmp_path / "photos"}"
  public_base_url: "http://test"
  max_photo_size: {MAX_PHOTO_SIZE}
request:
  max_body_size: {MAX_BODY_SIZE}
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
