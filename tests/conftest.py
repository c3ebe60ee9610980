"""Shared fixtures for stackgraph tests.

Provides a ready-made configuration and an empty stack so tests can declare
nodes without repeating setup.
"""

from __future__ import annotations

import pytest

from stackgraph.composite import Stack
from stackgraph.config import StackConfig


@pytest.fixture
def config() -> StackConfig:
    return StackConfig(
        environment="dev",
        prefix="test",
        region="us-east-1",
        tags={"project": "test"},
        backend_repo_path="org/backend",
        frontend_repo_path="org/frontend",
    )


@pytest.fixture
def stack(config: StackConfig) -> Stack:
    return Stack("TestStack", config)
