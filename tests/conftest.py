"""Shared fixtures: Flask test client, provider credentials and a patched httpx.post."""

from unittest.mock import patch

import pytest

from app import app as flask_app


@pytest.fixture
def client():
    flask_app.config['TESTING'] = True
    with flask_app.test_client() as c:
        yield c


@pytest.fixture
def provider_env(monkeypatch):
    """Credentials for every provider."""
    monkeypatch.setenv('ANTHROPIC_API_KEY', 'test-anthropic-key')
    monkeypatch.setenv('ELEVENLABS_API_KEY', 'test-elevenlabs-key')
    monkeypatch.setenv('AZURE_SPEECH_KEY', 'test-azure-key')
    monkeypatch.setenv('AZURE_SPEECH_REGION', 'northeurope')


@pytest.fixture
def upstream():
    """Mocked outbound call. Set return_value to an httpx.Response or side_effect to an exception."""
    with patch('httpx.post') as mock_post:
        yield mock_post
