"""
Performance tests.

Verifies detection processing stays fast against a local database.
"""

import time

import pytest

from parkingmate.domain.models import DetectionAction


class TestPerformance:
    """Performance tests for the detection pipeline."""

    @pytest.mark.asyncio
    async def test_detection_under_one_second(self, processor, make_detection, seed):
        """Test a registered entry is processed in under a second."""
        await seed.owned_vehicle("REG-1")

        start_time = time.time()
        outcome = await processor.process(make_detection(plate="REG-1"))
        elapsed = time.time() - start_time

        assert outcome.action == DetectionAction.PARKING_SESSION_CREATED
        assert elapsed < 1.0, f"Processing took {elapsed:.2f}s, expected < 1s"

    @pytest.mark.asyncio
    async def test_sequential_throughput(self, processor, make_detection, seed):
        """Test a burst of entry/exit pairs completes in reasonable time."""
        await seed.owned_vehicle("REG-1")

        start_time = time.time()
        for _ in range(10):
            await processor.process(make_detection(plate="REG-1"))
            await processor.process(make_detection(plate="REG-1", direction="exit"))
        elapsed = time.time() - start_time

        assert elapsed < 10.0, f"20 detections took {elapsed:.2f}s"
