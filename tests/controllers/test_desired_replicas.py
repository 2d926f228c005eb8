"""
Desired replica calculator tests.
"""

import random

import pytest

from runner_scale_set_controller.controllers.desired_replicas import DesiredReplicaCalculator
from runner_scale_set_controller.models.config import MAX_RUNNERS_UNBOUNDED


class TestDesiredReplicaCalculator:
    """Test the desired replica state machine."""

    @pytest.mark.parametrize(
        "min_runners,max_runners,calls,last_patch,patch_seq",
        [
            (0, MAX_RUNNERS_UNBOUNDED, [(0, 0)], 0, 0),
            (0, MAX_RUNNERS_UNBOUNDED, [(1, 0)], 1, 0),
            (0, MAX_RUNNERS_UNBOUNDED, [(1, 0), (0, 1)], 0, 1),
            (0, MAX_RUNNERS_UNBOUNDED, [(1, 0), (1, 0)], 1, 1),
            (1, MAX_RUNNERS_UNBOUNDED, [(0, 0)], 1, 0),
            (1, MAX_RUNNERS_UNBOUNDED, [(3, 0)], 4, 0),
            (1, MAX_RUNNERS_UNBOUNDED, [(3, 0), (0, 3)], 1, 1),
            (1, MAX_RUNNERS_UNBOUNDED, [(3, 0), (0, 3), (0, 0)], 1, 2),
            (0, 5, [(1, 0), (6, 1)], 5, 1),
        ],
    )
    def test_decision_sequences(self, min_runners, max_runners, calls, last_patch, patch_seq):
        """Test the reference decision sequences."""
        calculator = DesiredReplicaCalculator(min_runners=min_runners, max_runners=max_runners)

        for acquired, completed in calls:
            returned = calculator.compute(acquired, completed)

        assert calculator.last_patch == last_patch
        assert calculator.patch_seq == patch_seq
        assert returned == patch_seq

    def test_initial_state(self):
        """Test that no decision has been issued before the first batch."""
        calculator = DesiredReplicaCalculator()
        assert calculator.last_patch == -1
        assert calculator.patch_seq == -1

    def test_scale_up_factor_rounds_up(self):
        """Test that the scale-up factor over-provisions by whole runners."""
        calculator = DesiredReplicaCalculator(min_runners=1, scale_up_factor=1.5)

        calculator.compute(3, 0)

        assert calculator.last_patch == 1 + 5

    def test_empty_batch_repeats_last_decision(self):
        """Test that an empty batch re-issues the previous count with a new patch id."""
        calculator = DesiredReplicaCalculator()
        calculator.compute(4, 0)

        first = calculator.compute(0, 0)
        second = calculator.compute(0, 0)

        assert calculator.last_patch == 4
        assert second == first + 1

    def test_bounds_and_sequence_hold_for_any_batches(self):
        """Test the clamping bounds and the monotonic patch sequence."""
        rng = random.Random(7)
        calculator = DesiredReplicaCalculator(min_runners=2, max_runners=9, scale_up_factor=1.3)

        previous = calculator.patch_seq
        for _ in range(500):
            patch_id = calculator.compute(rng.randint(0, 12), rng.randint(0, 12))
            assert 2 <= calculator.last_patch <= 9
            assert patch_id == previous + 1
            previous = patch_id

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"min_runners": -1},
            {"min_runners": 5, "max_runners": 4},
            {"scale_up_factor": 0.5},
        ],
    )
    def test_invalid_configuration_rejected(self, kwargs):
        """Test that inconsistent bounds are rejected."""
        with pytest.raises(ValueError):
            DesiredReplicaCalculator(**kwargs)
