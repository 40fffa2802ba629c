"""
Unit tests for the keyed lock registry.
"""

import asyncio

import pytest

from parkingmate.application.locking import KeyedLockRegistry, customer_key, plate_key


class TestKeyedLockRegistry:
    """Tests for KeyedLockRegistry."""

    @pytest.mark.asyncio
    async def test_serializes_same_key(self):
        """Test two holders of one key never overlap."""
        locks = KeyedLockRegistry()
        active = 0
        overlaps = 0

        async def worker():
            nonlocal active, overlaps
            async with locks.hold(plate_key("org", "AB123")):
                active += 1
                if active > 1:
                    overlaps += 1
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(worker() for _ in range(5)))

        assert overlaps == 0

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self):
        """Test distinct keys do not block each other."""
        locks = KeyedLockRegistry()
        inside = asyncio.Event()

        async def first():
            async with locks.hold(plate_key("org", "AB123")):
                await asyncio.wait_for(inside.wait(), timeout=1)

        async def second():
            async with locks.hold(plate_key("org", "XY999")):
                inside.set()

        await asyncio.gather(first(), second())

    @pytest.mark.asyncio
    async def test_entries_are_released(self):
        """Test the registry forgets keys nobody holds."""
        locks = KeyedLockRegistry()
        key = customer_key("org", "c1")

        async with locks.hold(key):
            assert locks.is_locked(key) is True
            assert len(locks) == 1

        assert locks.is_locked(key) is False
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        """Test an exception inside the block releases the lock."""
        locks = KeyedLockRegistry()
        key = plate_key("org", "AB123")

        with pytest.raises(RuntimeError):
            async with locks.hold(key):
                raise RuntimeError("boom")

        assert len(locks) == 0

    def test_keys_are_namespaced(self):
        """Test plate and customer keys cannot collide."""
        assert plate_key("org", "X1") != customer_key("org", "X1")
