"""Shared fixtures for service tests."""

from unittest.mock import MagicMock

import pytest


# ── Supabase fluent-API mock ────────────────────────────────────────


def _chain_mock() -> MagicMock:
    """Return a MagicMock where every method returns self (chainable)."""
    m = MagicMock()
    for method in (
        "select",
        "eq",
        "neq",
        "order",
        "limit",
        "update",
        "insert",
        "delete",
    ):
        getattr(m, method).return_value = m
    m.execute.return_value = MagicMock(data=[])
    return m


@pytest.fixture
def mock_supabase():
    """Supabase client mock with chainable table API.

    Usage in tests:
        mock_supabase.table("messages") returns a chainable mock.
        Assign `.execute.return_value.data` to control returned rows.
    """
    sb = MagicMock()
    _tables: dict[str, MagicMock] = {}

    def _table(name: str) -> MagicMock:
        if name not in _tables:
            _tables[name] = _chain_mock()
        return _tables[name]

    sb.table.side_effect = _table
    sb._tables = _tables  # expose for assertions

    # RPC also needs chaining
    rpc_chain = MagicMock()
    rpc_chain.execute.return_value = MagicMock(data=[])
    sb.rpc.return_value = rpc_chain

    return sb
