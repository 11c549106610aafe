"""Pytest configuration and fixtures."""

import sys

import pytest

from cursor_agent_mcp.queries import QueryManager, QueryRegistry
from cursor_agent_mcp.resolver import CommandLine


class PythonCommandBuilder:
    """Runs the query text as a Python program instead of cursor-agent."""

    def build(self, query):
        return CommandLine([sys.executable, "-c", query])


class FixedCommandBuilder:
    """Always launches the same argv, whatever the query."""

    def __init__(self, argv):
        self.argv = list(argv)

    def build(self, query):
        return CommandLine(list(self.argv))


@pytest.fixture
def registry():
    return QueryRegistry()


@pytest.fixture
def make_manager(registry, tmp_path):
    """Factory for managers sharing the test registry; every manager is closed afterwards."""
    created = []

    def factory(builder=None, **kwargs):
        kwargs.setdefault("queries_dir", str(tmp_path))
        kwargs.setdefault("poll_interval", 0.05)
        kwargs.setdefault("kill_grace", 0.5)
        query_manager = QueryManager(builder or PythonCommandBuilder(), registry=registry, **kwargs)
        created.append(query_manager)
        return query_manager

    yield factory
    for query_manager in created:
        query_manager.close_all()


@pytest.fixture
def manager(make_manager):
    return make_manager()
