"""
Pytest Configuration and Fixtures
==================================
Shared fixtures for security tests.
"""

import base64
import os

import pytest

from ...config import EncryptionConfig
from ..secret_box import SecretBox


@pytest.fixture
def master_key() -> str:
    return base64.b64encode(os.urandom(32)).decode()


@pytest.fixture
def secret_box(master_key) -> SecretBox:
    return SecretBox(EncryptionConfig(master_key=master_key, master_key_id="master-v1", retired_keys=[]))


@pytest.fixture
def state_secret() -> str:
    return "s" * 40
