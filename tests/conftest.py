"""Pytest configuration for Beat Pilot tests."""

import logging

import pytest

logging.getLogger().handlers.clear()


@pytest.fixture
def repo(tmp_path):
    return str(tmp_path)
