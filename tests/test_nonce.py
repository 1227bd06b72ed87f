"""
Tests for HASHCHAIN nonce generators.
"""

import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.nonce import (
    NONCE_STRATEGIES,
    NonceSpaceExhausted,
    SequentialNonceGenerator,
    RandomNonceGenerator,
    RandomNumericNonceGenerator,
    create_generator,
)


def take(generator, n):
    return [generator.next()[0] for _ in range(n)]


class TestSequential:
    """Test the strided sequential generator."""

    def test_single_worker(self):
        gen = SequentialNonceGenerator(0, 1)
        assert take(gen, 5) == ['0', '1', '2', '3', '4']

    def test_stride(self):
        """Worker i of n yields i, i+n, i+2n, ..."""
        gen = SequentialNonceGenerator(2, 4)
        assert take(gen, 4) == ['2', '6', '10', '14']

    def test_workers_disjoint(self):
        """Workers of one pool never produce the same nonce."""
        count = 3
        seen = []
        for worker_id in range(count):
            seen.extend(take(SequentialNonceGenerator(worker_id, count), 100))

        assert len(seen) == len(set(seen))
        assert sorted(int(n) for n in seen) == list(range(300))

    def test_counter(self):
        gen = SequentialNonceGenerator(1, 2)
        counters = [gen.next()[1] for _ in range(3)]
        assert counters == [1, 2, 3]

    def test_reset(self):
        """Reset restarts both the counter and the nonce sequence."""
        gen = SequentialNonceGenerator(1, 2)
        first = take(gen, 3)
        gen.reset()

        assert gen.counter == 0
        assert take(gen, 3) == first

    def test_start_iteration(self):
        gen = SequentialNonceGenerator(0, 2, start_iteration=10)
        assert gen.next()[0] == '20'
        gen.reset()
        assert gen.current_nonce == 20

    def test_max_nonce(self):
        """Bounded range raises once the next nonce reaches max_nonce."""
        gen = SequentialNonceGenerator(1, 2, max_nonce=6)
        assert take(gen, 3) == ['1', '3', '5']

        with pytest.raises(NonceSpaceExhausted):
            gen.next()

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            SequentialNonceGenerator(0, 0)
        with pytest.raises(ValueError):
            SequentialNonceGenerator(3, 3)
        with pytest.raises(ValueError):
            SequentialNonceGenerator(-1, 3)


class TestRandom:
    """Test random generators."""

    def test_token(self):
        gen = RandomNonceGenerator()
        tokens = take(gen, 50)

        assert len(set(tokens)) == 50
        assert all(tokens)
        assert all(' ' not in t and '\n' not in t for t in tokens)

    def test_numeric_width(self):
        gen = RandomNumericNonceGenerator(digits=8)
        for nonce in take(gen, 50):
            assert len(nonce) == 8
            assert nonce.isdigit()

    def test_numeric_invalid(self):
        with pytest.raises(ValueError):
            RandomNumericNonceGenerator(digits=0)

    def test_counter_reset(self):
        gen = RandomNonceGenerator()
        take(gen, 3)
        assert gen.counter == 3
        gen.reset()
        assert gen.counter == 0


class TestFactory:
    """Test create_generator."""

    def test_all_strategies(self):
        for strategy in NONCE_STRATEGIES:
            gen = create_generator(strategy, worker_id=0, worker_count=2)
            assert gen.strategy == strategy
            assert gen.next()[1] == 1

    def test_sequential_options(self):
        gen = create_generator('sequential', worker_id=1, worker_count=3, max_nonce=2)
        assert gen.next()[0] == '1'
        with pytest.raises(NonceSpaceExhausted):
            gen.next()

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            create_generator('nanoid')
