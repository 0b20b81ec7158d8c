from __future__ import annotations

from unittest import mock

from apps_monitoring.infrastructure.locking import lock_key, try_advisory_lock


def test_lock_key_is_stable_and_fits_bigint() -> None:
    key = lock_key("pair:skd:abc")
    assert key == lock_key("pair:skd:abc")
    assert key != lock_key("pair:skd:abd")
    assert -(2 ** 63) <= key < 2 ** 63


def test_sqlite_lock_is_always_granted(session_factory) -> None:
    with try_advisory_lock(session_factory, "seeder") as first:
        with try_advisory_lock(session_factory, "seeder") as second:
            assert first and second


def _postgres_factory(acquired: bool):
    conn = mock.MagicMock()
    conn.execution_options.return_value = conn
    conn.execute.return_value.scalar.return_value = acquired
    bind = mock.MagicMock()
    bind.dialect.name = "postgresql"
    bind.connect.return_value.__enter__.return_value = conn
    session = mock.MagicMock()
    session.__enter__.return_value.get_bind.return_value = bind
    return mock.Mock(return_value=session), conn


def test_postgres_lock_is_released_after_block() -> None:
    factory, conn = _postgres_factory(acquired=True)
    with try_advisory_lock(factory, "seeder") as held:
        assert held
    statements = [str(c.args[0]) for c in conn.execute.call_args_list]
    assert statements == ["SELECT pg_try_advisory_lock(:key)", "SELECT pg_advisory_unlock(:key)"]
    assert conn.execute.call_args_list[0].args[1] == {"key": lock_key("seeder")}


def test_postgres_lock_held_elsewhere_is_not_unlocked() -> None:
    factory, conn = _postgres_factory(acquired=False)
    with try_advisory_lock(factory, "seeder") as held:
        assert not held
    assert conn.execute.call_count == 1
