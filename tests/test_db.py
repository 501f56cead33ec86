"""Tests for async database connection abstraction."""

from pathlib import Path

import pytest

from herald.db import AsyncConnection, connection, get_connection

pytestmark = pytest.mark.usefixtures("_no_turso")


class TestGetConnection:
    async def test_returns_async_connection(self, tmp_path: Path):
        conn = await get_connection(local_path_override=tmp_path / "test.db")
        assert isinstance(conn, AsyncConnection)
        await conn.close()

    async def test_creates_parent_dirs(self, tmp_path: Path):
        db_path = tmp_path / "nested" / "dir" / "test.db"
        conn = await get_connection(local_path_override=db_path)
        assert db_path.parent.exists()
        await conn.close()


class TestAsyncConnection:
    async def test_execute_and_fetchone(self, tmp_path: Path):
        conn = await get_connection(local_path_override=tmp_path / "test.db")
        await conn.execute("CREATE TABLE t (id INTEGER PRIMARY KEY, val TEXT)")
        await conn.execute("INSERT INTO t (val) VALUES (?)", ("hello",))
        await conn.commit()

        cursor = await conn.execute("SELECT val FROM t WHERE id = 1")
        row = await cursor.fetchone()
        assert row == ("hello",)
        await conn.close()

    async def test_rowcount(self, tmp_path: Path):
        conn = await get_connection(local_path_override=tmp_path / "test.db")
        await conn.execute("CREATE TABLE t (id INTEGER PRIMARY KEY, name TEXT)")
        await conn.execute("INSERT INTO t (name) VALUES (?)", ("a",))
        await conn.execute("INSERT INTO t (name) VALUES (?)", ("b",))
        cursor = await conn.execute("UPDATE t SET name = 'z'")
        assert cursor.rowcount == 2
        await conn.commit()
        await conn.close()


class TestConnectionContext:
    async def test_commits_on_success(self, tmp_path: Path):
        path = tmp_path / "test.db"
        async with connection(path) as db:
            await db.execute("CREATE TABLE t (name TEXT)")
            await db.execute("INSERT INTO t (name) VALUES (?)", ("kept",))

        async with connection(path) as db:
            cursor = await db.execute("SELECT name FROM t")
            assert await cursor.fetchall() == [("kept",)]

    async def test_rolls_back_on_error(self, tmp_path: Path):
        path = tmp_path / "test.db"
        async with connection(path) as db:
            await db.execute("CREATE TABLE t (name TEXT)")

        with pytest.raises(RuntimeError):
            async with connection(path) as db:
                await db.execute("INSERT INTO t (name) VALUES (?)", ("lost",))
                raise RuntimeError("boom")

        async with connection(path) as db:
            cursor = await db.execute("SELECT name FROM t")
            assert await cursor.fetchall() == []
