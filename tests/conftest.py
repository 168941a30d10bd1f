"""Shared fixtures for the chat server tests."""

import pytest

from arouzy_chat.auth import TokenAuthenticator

from .fakes import TEST_SECRET, Core, FailingMessageStore


@pytest.fixture
def core() -> Core:
    return Core()


@pytest.fixture
def failing_core() -> Core:
    return Core(FailingMessageStore())


@pytest.fixture
def authenticator() -> TokenAuthenticator:
    return TokenAuthenticator(TEST_SECRET)
