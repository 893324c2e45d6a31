#!/usr/bin/env python
"""
test_pipeline.py - Tests del pipeline de etapas con colas acotadas
==================================================================
"""

import io
import itertools
import threading
import time
import unittest

from blockdelta import (
    Channel,
    OperationCancelled,
    SessionConfig,
    Stage,
    iter_signatures,
)


class TestChannel(unittest.TestCase):
    """Tests del Channel"""

    def test_ordered_delivery(self):
        """Test: los elementos llegan en orden y close() termina la iteración"""
        ch = Channel(maxsize=10)
        for i in range(5):
            self.assertTrue(ch.put(i))
        ch.close()
        self.assertEqual(list(ch), [0, 1, 2, 3, 4])

    def test_failure_is_reraised(self):
        """Test: fail() relanza el error en el consumidor"""
        ch = Channel(maxsize=10)
        ch.put('a')
        ch.fail(KeyError('boom'))
        got = []
        with self.assertRaises(KeyError):
            for item in ch:
                got.append(item)
        self.assertEqual(got, ['a'])

    def test_bounded_put_released_by_abandon(self):
        """Test: put() bloquea con la cola llena hasta que el consumidor abandona"""
        ch = Channel(maxsize=1)
        self.assertTrue(ch.put(1))
        results = []
        t = threading.Thread(target=lambda: results.append(ch.put(2)))
        t.start()
        time.sleep(0.3)
        self.assertTrue(t.is_alive())
        ch.abandon()
        t.join(timeout=5)
        self.assertFalse(t.is_alive())
        self.assertEqual(results, [False])
        self.assertTrue(ch.abandoned)


class TestStage(unittest.TestCase):
    """Tests de Stage"""

    def test_order_preserved(self):
        """Test: una etapa preserva el orden del productor"""
        with Stage("numbers", range(1000), depth=4) as stage:
            self.assertEqual(list(stage), list(range(1000)))

    def test_producer_exception_forwarded(self):
        """Test: una excepción del productor llega al consumidor"""
        def producer():
            yield 1
            yield 2
            raise ValueError("producer crashed")

        got = []
        with Stage("crashy", producer(), depth=2) as stage:
            with self.assertRaises(ValueError):
                for item in stage:
                    got.append(item)
        self.assertEqual(got, [1, 2])

    def test_consumer_early_exit_stops_producer(self):
        """Test: si el consumidor se va, el hilo productor termina"""
        closed = threading.Event()

        def producer():
            try:
                for i in itertools.count():
                    yield i
            finally:
                closed.set()

        stage = Stage("endless", producer(), depth=2)
        with stage:
            taken = list(itertools.islice(stage, 5))
        self.assertEqual(taken, [0, 1, 2, 3, 4])
        self.assertFalse(stage.alive)
        self.assertTrue(closed.is_set())

    def test_cancellation_propagates(self):
        """Test: la cancelación llega como marcador de error"""
        config = SessionConfig.create(block_size=1024)
        cancel = threading.Event()
        base = io.BytesIO(b'\x01' * 1024 * 200)
        sigs = []
        with Stage("fingerprint", iter_signatures(base, config, cancel), depth=2) as stage:
            for sig in stage:
                sigs.append(sig)
                cancel.set()
        self.assertIsInstance(sigs[-1].error, OperationCancelled)
        self.assertLess(len(sigs), 200)
        self.assertTrue(all(s.ok for s in sigs[:-1]))


if __name__ == '__main__':
    unittest.main()
