"""Tests for the credential stores and the Redis revocation backend."""

import time
from contextlib import contextmanager
from datetime import datetime, timezone

import fakeredis
import pytest
from fakeredis import aioredis as fake_aioredis
from psycopg import errors

from coopadmin.service.revocation import RevocationCache
from coopadmin.storage.errors import ConstraintViolation
from coopadmin.storage.memory import MemoryStore
from coopadmin.storage.postgres import PostgresStore
from coopadmin.storage import redis_cache as redis_cache_module
from coopadmin.storage.redis_cache import RedisCache


class TestMemoryStore:
    @pytest.fixture
    def store(self):
        return MemoryStore()

    def test_create_and_lookup(self, store):
        admin = store.create_admin("Someone@Coop.Example")
        assert admin.email == "someone@coop.example"
        assert admin.password_hash is None
        assert store.get_admin(admin.id).email == "someone@coop.example"
        assert store.get_admin_by_email("SOMEONE@coop.example").id == admin.id

    def test_duplicate_email_rejected(self, store):
        store.create_admin("dup@coop.example")
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_admin("DUP@coop.example")
        assert excinfo.value.message == "dup@coop.example is already in use"

    def test_returned_records_are_copies(self, store):
        admin = store.create_admin("copy@coop.example")
        fetched = store.get_admin(admin.id)
        fetched.is_disabled = True
        assert store.get_admin(admin.id).is_disabled is False

    def test_set_password_updates_timestamp(self, store):
        admin = store.create_admin("pw@coop.example")
        updated = store.set_password(admin.id, "salt$hash")
        assert updated.password_hash == "salt$hash"
        assert updated.updated_at is not None
        assert store.set_password("missing", "x") is None

    def test_consume_reset_token_once(self, store):
        admin = store.create_admin("reset@coop.example")
        now = int(time.time())
        store.set_reset_token(admin.id, "tok", now + 60)
        assert store.get_admin_by_reset_token("tok").id == admin.id

        consumed = store.consume_reset_token("tok", "salt$new", now)
        assert consumed.password_hash == "salt$new"
        assert consumed.reset_token is None
        assert store.consume_reset_token("tok", "salt$other", now) is None
        assert store.get_admin(admin.id).password_hash == "salt$new"

    def test_consume_expired_reset_token(self, store):
        admin = store.create_admin("expired@coop.example")
        now = int(time.time())
        store.set_reset_token(admin.id, "tok", now - 1)
        assert store.consume_reset_token("tok", "salt$new", now) is None
        assert store.get_admin(admin.id).password_hash is None

    def test_disable_and_login_attempt(self, store):
        admin = store.create_admin("flags@coop.example")
        at = datetime.now(timezone.utc)
        store.record_login_attempt(admin.id, at)
        assert store.set_disabled(admin.id, True).is_disabled is True
        assert store.get_admin(admin.id).last_login_attempt_at == at


class FakeCursor:
    def __init__(self, row):
        self.row = row

    def fetchone(self):
        return self.row

    def fetchall(self):
        return [self.row] if self.row else []


class FakeConnection:
    def __init__(self, row=None, error=None):
        self.row = row
        self.error = error
        self.executed = []

    def execute(self, query, params=None):
        self.executed.append((" ".join(query.split()), params))
        if self.error:
            raise self.error
        return FakeCursor(self.row)


class FakePool:
    def __init__(self, connection):
        self.conn = connection

    @contextmanager
    def connection(self):
        yield self.conn


def _store_with(connection) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unused"
    store.pool = FakePool(connection)
    store.logger = MemoryStore().logger
    return store


def _row(**overrides):
    row = {
        "id": "a1",
        "email": "pg@coop.example",
        "password_hash": "salt$hash",
        "reset_token": None,
        "reset_expires": None,
        "last_login_attempt_at": None,
        "is_disabled": False,
        "created_at": datetime.now(timezone.utc),
        "updated_at": None,
    }
    row.update(overrides)
    return row


class TestPostgresStore:
    def test_row_to_admin(self):
        admin = PostgresStore._row_to_admin(_row(is_disabled=True))
        assert admin.id == "a1"
        assert admin.is_disabled is True
        assert PostgresStore._row_to_admin(None) is None

    def test_email_lookup_is_case_insensitive(self):
        conn = FakeConnection(_row())
        store = _store_with(conn)
        admin = store.get_admin_by_email("  PG@Coop.Example ")
        assert admin.email == "pg@coop.example"
        query, params = conn.executed[0]
        assert "lower(email) = %s" in query
        assert params == ("pg@coop.example",)

    def test_unique_violation_becomes_constraint_violation(self):
        store = _store_with(FakeConnection(error=errors.UniqueViolation("duplicate key")))
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_admin("pg@coop.example")
        assert excinfo.value.message == "pg@coop.example is already in use"

    def test_consume_reset_token_is_conditional_update(self):
        conn = FakeConnection(_row())
        store = _store_with(conn)
        store.consume_reset_token("tok", "salt$new", 1000)
        query, params = conn.executed[0]
        assert query.startswith("UPDATE admins")
        assert "reset_token = NULL" in query
        assert "WHERE reset_token = %s AND reset_expires >= %s" in query
        assert params == ("salt$new", "tok", 1000)

    def test_blank_reset_token_skips_query(self):
        conn = FakeConnection(_row())
        store = _store_with(conn)
        assert store.get_admin_by_reset_token("") is None
        assert store.consume_reset_token("", "salt$new", 1000) is None
        assert conn.executed == []


@pytest.fixture
def redis_cache(monkeypatch):
    """RedisCache wired to an in-process fake server that runs the Lua script."""
    server = fakeredis.FakeServer()

    def from_url(url, **kwargs):
        return fake_aioredis.FakeRedis(server=server, decode_responses=True)

    monkeypatch.setattr(redis_cache_module.aioredis, "from_url", from_url)
    return RedisCache("redis://cache.test:6379/0")


class TestRedisCache:
    """Denylist and throttle markers against the Redis command set."""

    def test_keys_are_namespaced_per_subject(self):
        assert RedisCache._revoked_key("a1") == "auth:revoked:a1"
        assert RedisCache._attempt_key("a1") == "auth:login_attempt:a1"

    @pytest.mark.asyncio
    async def test_revoked_membership(self, redis_cache):
        await redis_cache.add_revoked("a1", "fp-1", 50)
        assert await redis_cache.is_member_revoked("a1", "fp-1") is True
        assert await redis_cache.is_member_revoked("a1", "fp-2") is False
        assert await redis_cache.is_member_revoked("a2", "fp-1") is False
        await redis_cache.close()

    @pytest.mark.asyncio
    async def test_set_ttl_only_extends(self, redis_cache):
        """The set lives as long as its longest-lived member."""
        key = RedisCache._revoked_key("a1")
        await redis_cache.add_revoked("a1", "fp-1", 50)
        first = await redis_cache.client.ttl(key)
        assert 0 < first <= 50

        await redis_cache.add_revoked("a1", "fp-2", 10)
        assert await redis_cache.client.ttl(key) > 10

        await redis_cache.add_revoked("a1", "fp-3", 500)
        assert 50 < await redis_cache.client.ttl(key) <= 500
        assert await redis_cache.client.smembers(key) == {"fp-1", "fp-2", "fp-3"}
        await redis_cache.close()

    @pytest.mark.asyncio
    async def test_non_positive_ttl_still_expires(self, redis_cache):
        await redis_cache.add_revoked("a1", "fp-1", 0)
        assert await redis_cache.client.ttl(RedisCache._revoked_key("a1")) > 0
        await redis_cache.close()

    @pytest.mark.asyncio
    async def test_login_attempt_marker(self, redis_cache):
        assert await redis_cache.get_login_attempt("a1") is None
        await redis_cache.set_login_attempt("a1", 1700000000.5, 30)
        assert await redis_cache.get_login_attempt("a1") == 1700000000.5
        assert 0 < await redis_cache.client.ttl(RedisCache._attempt_key("a1")) <= 30
        await redis_cache.close()

    @pytest.mark.asyncio
    async def test_unparseable_login_attempt_is_ignored(self, redis_cache):
        await redis_cache.client.set(RedisCache._attempt_key("a1"), "not-a-number")
        assert await redis_cache.get_login_attempt("a1") is None
        await redis_cache.close()

    @pytest.mark.asyncio
    async def test_revocation_cache_over_redis(self, redis_cache):
        """End to end: revoke a token, then only that token reads as revoked."""
        revocation = RevocationCache(redis_cache, ceiling_seconds=120)
        await revocation.revoke("a1", "token-one", 10_000)
        assert await revocation.is_revoked("a1", "token-one") is True
        assert await revocation.is_revoked("a1", "token-two") is False
        assert await redis_cache.client.ttl(RedisCache._revoked_key("a1")) <= 120

        await revocation.record_login_attempt("a1", 60)
        assert await revocation.is_throttled("a1", 60) is True
        assert await revocation.is_throttled("a2", 60) is False
        await redis_cache.close()
