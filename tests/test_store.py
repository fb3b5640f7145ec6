"""
Key-value store tests.
"""

import pytest

from athwatch.database.connection import Database
from athwatch.database.store import KeyValueStore, StoreError


class TestDatabase:
    """Test database connection management."""

    def test_initialize_creates_tables(self, db: Database):
        """Should create key-value tables."""
        cursor = db.connection.cursor()
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = {row["name"] for row in cursor.fetchall()}

        assert {"kv_strings", "kv_hashes", "kv_sets", "kv_zsets", "kv_expiry"} <= tables

    def test_file_database_creates_parent_directory(self, tmp_path):
        """Should create missing parent directories."""
        path = tmp_path / "nested" / "athwatch.db"
        database = Database(str(path))
        database.initialize()
        database.close()

        assert path.exists()


class TestStrings:
    """Test string values and TTLs."""

    def test_set_and_get(self, store: KeyValueStore):
        """Should store values as strings."""
        store.set("cron:last_duration", 1234)

        assert store.get("cron:last_duration") == "1234"
        assert store.get("missing") is None

    def test_ttl_expiry(self, store: KeyValueStore, clock):
        """Should hide keys once their TTL has passed."""
        store.set("coingecko:markets:usd:100:1", "[]", ttl=60)

        clock.advance(seconds=59)
        assert store.get("coingecko:markets:usd:100:1") == "[]"
        assert store.ttl("coingecko:markets:usd:100:1") == pytest.approx(1)

        clock.advance(seconds=1)
        assert store.get("coingecko:markets:usd:100:1") is None
        assert store.exists("coingecko:markets:usd:100:1") is False

    def test_set_without_ttl_clears_expiry(self, store: KeyValueStore, clock):
        """Should make a key persistent when rewritten without TTL."""
        store.set("key", "a", ttl=10)
        store.set("key", "b")

        clock.advance(seconds=60)
        assert store.get("key") == "b"
        assert store.ttl("key") is None

    def test_set_nx(self, store: KeyValueStore, clock):
        """Should only write when the key is absent or expired."""
        assert store.set("lock", "first", ttl=300, nx=True) is True
        assert store.set("lock", "second", ttl=300, nx=True) is False
        assert store.get("lock") == "first"

        clock.advance(seconds=300)
        assert store.set("lock", "third", ttl=300, nx=True) is True
        assert store.get("lock") == "third"

    def test_incr(self, store: KeyValueStore):
        """Should create counters at zero and increment them."""
        assert store.incr("counter") == 1
        assert store.incr("counter", 5) == 6

    def test_expire_missing_key(self, store: KeyValueStore):
        """Should not set TTL on a missing key."""
        assert store.expire("missing", 10) is False


class TestHashes:
    """Test hash operations."""

    def test_hset_and_hgetall(self, store: KeyValueStore):
        """Should store fields and skip None values."""
        created = store.hset("crypto:bitcoin", {"symbol": "BTC", "ath": 69000.0, "rank": None})

        assert created == 2
        assert store.hgetall("crypto:bitcoin") == {"symbol": "BTC", "ath": "69000.0"}
        assert store.hget("crypto:bitcoin", "symbol") == "BTC"

    def test_hset_updates_existing_field(self, store: KeyValueStore):
        """Should overwrite fields without counting them as new."""
        store.hset("h", {"a": "1"})

        assert store.hset("h", {"a": "2", "b": "3"}) == 1
        assert store.hgetall("h") == {"a": "2", "b": "3"}

    def test_hdel(self, store: KeyValueStore):
        """Should delete fields."""
        store.hset("h", {"a": "1", "b": "2"})

        assert store.hdel("h", "a", "missing") == 1
        assert store.hgetall("h") == {"b": "2"}

    def test_delete_removes_any_type(self, store: KeyValueStore):
        """Should delete a hash key entirely."""
        store.hset("h", {"a": "1"})

        assert store.delete("h") is True
        assert store.hgetall("h") == {}
        assert store.delete("h") is False


class TestSets:
    """Test set operations."""

    def test_set_membership(self, store: KeyValueStore):
        """Should add, count and remove members."""
        assert store.sadd("crypto:tracked", "bitcoin", "ethereum") == 2
        assert store.sadd("crypto:tracked", "bitcoin") == 0

        assert store.scard("crypto:tracked") == 2
        assert store.sismember("crypto:tracked", "bitcoin") is True

        store.srem("crypto:tracked", "bitcoin")
        assert store.smembers("crypto:tracked") == {"ethereum"}


class TestSortedSets:
    """Test sorted set operations."""

    @pytest.fixture
    def zset(self, store: KeyValueStore):
        store.zadd("z", {"a": 1, "b": 2, "c": 3, "d": 4})
        return store

    def test_zrange(self, zset: KeyValueStore):
        """Should return members by rank, inclusive of stop."""
        assert zset.zrange("z") == ["a", "b", "c", "d"]
        assert zset.zrange("z", 0, 1) == ["a", "b"]
        assert zset.zrange("z", 0, 1, desc=True) == ["d", "c"]
        assert zset.zrange("z", -2) == ["c", "d"]

    def test_zrangebyscore(self, zset: KeyValueStore):
        """Should filter by score with optional limit."""
        assert zset.zrangebyscore("z", 2, 3) == ["b", "c"]
        assert zset.zrangebyscore("z", max_score=3, count=2) == ["a", "b"]
        assert zset.zrangebyscore("z", min_score=2, desc=True) == ["d", "c", "b"]

    def test_zadd_updates_score(self, zset: KeyValueStore):
        """Should move an existing member."""
        assert zset.zadd("z", {"a": 10}) == 0
        assert zset.zscore("z", "a") == 10
        assert zset.zrange("z", -1) == ["a"]

    def test_zremrangebyscore(self, zset: KeyValueStore):
        """Should remove members within score range."""
        assert zset.zremrangebyscore("z", float("-inf"), 2) == 2
        assert zset.zcard("z") == 2

    def test_keys_glob(self, store: KeyValueStore):
        """Should list keys of every type matching a glob."""
        store.hset("email:failed:1", {"id": "1"})
        store.hset("email:failed:2", {"id": "2"})
        store.zadd("email:queue", {"x": 1})

        assert store.keys("email:failed:*") == ["email:failed:1", "email:failed:2"]


class TestErrors:
    """Test error propagation."""

    def test_closed_database_raises_store_error(self, db: Database, store: KeyValueStore):
        """Should wrap sqlite errors in StoreError."""
        db.close()

        with pytest.raises(StoreError):
            store.get("anything")

    def test_failed_operation_rolls_back(self, store: KeyValueStore):
        """Should leave the store usable after a write fails midway."""
        store.set("counter", "not-a-number")

        with pytest.raises(ValueError):
            store.incr("counter")

        store.set("counter", 1)
        assert store.incr("counter") == 2


class TestConcurrentConnections:
    """Test writers on separate connections to one file."""

    @pytest.fixture
    def stores(self, tmp_path, clock):
        path = str(tmp_path / "shared.db")
        db_a = Database(path)
        db_a.initialize()
        db_b = Database(path, timeout=0.1)
        db_b.initialize()
        yield KeyValueStore(db_a, clock=clock.time), KeyValueStore(db_b, clock=clock.time)
        db_a.close()
        db_b.close()

    def test_nx_claim_blocks_other_connection(self, stores):
        """Should not let a second connection write between check and write."""
        store_a, store_b = stores
        outcomes = {}
        check_key = store_a._key_exists

        def check_then_race(cursor, name):
            exists = check_key(cursor, name)
            if "b" not in outcomes:
                try:
                    outcomes["b"] = store_b.set("lock", "b", ttl=300, nx=True)
                except StoreError:
                    outcomes["b"] = False
            return exists

        store_a._key_exists = check_then_race
        outcomes["a"] = store_a.set("lock", "a", ttl=300, nx=True)
        del store_a._key_exists

        assert outcomes == {"a": True, "b": False}
        assert store_b.get("lock") == "a"
        assert store_b.set("lock", "b", ttl=300, nx=True) is False

    def test_smembers_returns_set(self, stores):
        """Should return members written by another connection."""
        store_a, store_b = stores
        store_a.sadd("crypto:tracked", "bitcoin")

        assert store_b.smembers("crypto:tracked") == {"bitcoin"}
