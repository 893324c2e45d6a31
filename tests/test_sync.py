#!/usr/bin/env python
"""
test_sync.py - Tests del DeltaEncoder y del PatchApplier
========================================================

Tests del escaneo con ventana rodante (Copy/Literal), estadísticas,
digest del target, cancelación y aplicación de operaciones.
"""

import io
import random
import hashlib
import threading
import unittest

from blockdelta import (
    BlockSignature,
    ChecksumRegistry,
    ChecksumType,
    CopyOperation,
    ErrorOperation,
    FileIOError,
    LiteralOperation,
    LookupTable,
    OperationCancelled,
    PatchError,
    SessionConfig,
    SyncStats,
    ValidationError,
    apply_operations,
    iter_operations,
    iter_signatures,
)

BS = 1024


def random_bytes(n, seed=0):
    return random.Random(seed).getrandbits(8 * n).to_bytes(n, 'little') if n else b''


def literal_bytes(ops):
    return b''.join(op.data for op in ops if isinstance(op, LiteralOperation))


def copies(ops):
    return [op.base_index for op in ops if isinstance(op, CopyOperation)]


class BrokenStream:
    """Stream cuya lectura siempre falla"""

    def read(self, size=-1):
        raise OSError("read error")


class SyncTestCase(unittest.TestCase):

    def setUp(self):
        self.config = SessionConfig.create(block_size=BS)

    def table_for(self, base, config=None):
        return LookupTable.build(iter_signatures(io.BytesIO(base), config or self.config))

    def sync(self, base, target, config=None, **kwargs):
        config = config or self.config
        return list(iter_operations(io.BytesIO(target), self.table_for(base, config), config, **kwargs))

    def rebuild(self, base, ops, config=None):
        out = io.BytesIO()
        apply_operations(out, io.BytesIO(base), ops, config or self.config)
        return out.getvalue()


class TestDeltaEncoder(SyncTestCase):
    """Tests de iter_operations"""

    def test_identical_data_only_copies(self):
        """Test: datos idénticos producen solo Copy en orden"""
        base = random_bytes(BS * 4, seed=1)
        ops = self.sync(base, base)
        self.assertEqual(ops, [CopyOperation(i) for i in range(4)])

    def test_short_final_block_matches(self):
        """Test: el bloque final corto también se copia"""
        base = random_bytes(BS * 2 + 300, seed=2)
        ops = self.sync(base, base)
        self.assertEqual(ops, [CopyOperation(0), CopyOperation(1), CopyOperation(2)])

    def test_empty_target(self):
        """Test: target vacío no produce operaciones"""
        self.assertEqual(self.sync(random_bytes(BS, seed=3), b''), [])

    def test_empty_base_all_literal(self):
        """Test: sin base, todo el target es literal en trozos <= bs"""
        target = random_bytes(BS * 3 + 10, seed=4)
        ops = self.sync(b'', target)
        self.assertTrue(all(isinstance(op, LiteralOperation) for op in ops))
        self.assertTrue(all(len(op.data) <= BS for op in ops))
        self.assertEqual(literal_bytes(ops), target)

    def test_modified_middle_block(self):
        """Test: cambio dentro de un bloque -> Copy, Literal(bloque), Copy"""
        base = random_bytes(BS * 3, seed=5)
        target = bytearray(base)
        target[BS + 100:BS + 110] = b'\x00' * 10
        target = bytes(target)
        ops = self.sync(base, target)
        self.assertIsInstance(ops[0], CopyOperation)
        self.assertIsInstance(ops[-1], CopyOperation)
        self.assertEqual(copies(ops), [0, 2])
        self.assertEqual(literal_bytes(ops), target[BS:2 * BS])

    def test_prefix_insertion_realigns(self):
        """Test: bytes insertados al inicio se emiten como literal y luego copias"""
        base = random_bytes(BS * 3, seed=6)
        target = b'inserted!' * 10 + base
        ops = self.sync(base, target)
        self.assertEqual(ops[0], LiteralOperation(b'inserted!' * 10))
        self.assertEqual(copies(ops), [0, 1, 2])

    def test_reordered_blocks(self):
        """Test: bloques reordenados se copian por índice"""
        base = random_bytes(BS * 3, seed=7)
        target = base[2 * BS:] + base[:BS] + base[BS:2 * BS]
        self.assertEqual(self.sync(base, target), [CopyOperation(2), CopyOperation(0), CopyOperation(1)])

    def test_ops_reconstruct_target(self):
        """Test: aplicar las operaciones reconstruye el target"""
        base = random_bytes(BS * 5 + 17, seed=8)
        target = base[:BS * 2] + b'new data in the middle' + base[BS * 2 + 500:] + b'tail'
        ops = self.sync(base, target)
        self.assertEqual(self.rebuild(base, ops), target)

    def test_literal_limit(self):
        """Test: ningún literal supera literal_limit"""
        config = SessionConfig.create(block_size=BS, literal_limit=100)
        target = random_bytes(1000, seed=9)
        ops = self.sync(b'', target, config)
        self.assertEqual([len(op.data) for op in ops], [100] * 10)

    def test_digest_covers_every_byte(self):
        """Test: el digest acumulado es el hash del target completo"""
        base = random_bytes(BS * 3, seed=10)
        target = base + b'extra literal bytes'
        digest = hashlib.sha256()
        self.sync(base, target, digest=digest)
        self.assertEqual(digest.digest(), hashlib.sha256(target).digest())

    def test_stats(self):
        """Test: estadísticas de matches y literales"""
        base = random_bytes(BS * 2, seed=11)
        stats = SyncStats()
        self.sync(base, base + b'z' * 50, stats=stats)
        self.assertEqual(stats.matches, 2)
        self.assertEqual(stats.matched_data, 2 * BS)
        self.assertEqual(stats.literal_data, 50)
        self.assertEqual(stats.operations, 3)
        self.assertGreater(stats.efficiency, 0.9)

    def test_cancelled(self):
        """Test: cancelación termina con un único ErrorOperation"""
        cancel = threading.Event()
        cancel.set()
        ops = self.sync(b'', random_bytes(BS * 2, seed=12), cancel=cancel)
        self.assertEqual(len(ops), 1)
        self.assertIsInstance(ops[0], ErrorOperation)
        self.assertIsInstance(ops[0].error, OperationCancelled)

    def test_read_failure(self):
        """Test: fallo de lectura del target -> ErrorOperation(FileIOError)"""
        table = self.table_for(b'')
        ops = list(iter_operations(BrokenStream(), table, self.config))
        self.assertEqual(len(ops), 1)
        self.assertIsInstance(ops[0].error, FileIOError)

    def test_xxhash_strong_hash(self):
        """Test: sincronización con xxh3 como hash fuerte"""
        config = SessionConfig.create(block_size=BS, checksum_type=ChecksumType.XXH3)
        base = random_bytes(BS * 3, seed=13)
        target = base[:BS] + b'?' * 10 + base[BS:]
        ops = self.sync(base, target, config)
        self.assertEqual(copies(ops), [0, 1, 2])
        self.assertEqual(self.rebuild(base, ops, config), target)

    def test_weak_collision_resolved_by_strong_hash(self):
        """Test: un candidato con el mismo weak y otro strong no impide el Copy correcto"""
        data = random_bytes(BS, seed=14)
        real = list(iter_signatures(io.BytesIO(data), self.config))[0]
        decoy = BlockSignature(index=0, weak=real.weak, strong=b'\x00' * 32)
        table = LookupTable.build([decoy, BlockSignature(index=1, weak=real.weak, strong=real.strong)])
        stats = SyncStats()
        ops = list(iter_operations(io.BytesIO(data), table, self.config, stats=stats))
        self.assertEqual(ops, [CopyOperation(1)])
        self.assertEqual(stats.hash_hits, 1)
        self.assertEqual(stats.false_alarms, 0)

    def test_weak_collision_without_strong_match_is_false_alarm(self):
        """Test: weak coincide pero ningún strong -> todo literal y falsa alarma contada"""
        data = random_bytes(BS, seed=15)
        real = list(iter_signatures(io.BytesIO(data), self.config))[0]
        table = LookupTable.build([BlockSignature(index=0, weak=real.weak, strong=b'\x00' * 32)])
        stats = SyncStats()
        ops = list(iter_operations(io.BytesIO(data), table, self.config, stats=stats))
        self.assertTrue(all(isinstance(op, LiteralOperation) for op in ops))
        self.assertEqual(literal_bytes(ops), data)
        self.assertGreater(stats.false_alarms, 0)
        self.assertEqual(stats.matches, 0)
        self.assertGreater(stats.false_positive_rate, 0.0)


class TestPatchApplier(SyncTestCase):
    """Tests de apply_operations"""

    def test_apply_copy_and_literal(self):
        """Test: Copy lee el bloque de la base, Literal escribe los bytes"""
        base = random_bytes(BS * 2 + 5, seed=20)
        ops = [LiteralOperation(b'head'), CopyOperation(1), CopyOperation(2), CopyOperation(0)]
        expected = b'head' + base[BS:2 * BS] + base[2 * BS:] + base[:BS]
        self.assertEqual(self.rebuild(base, ops), expected)

    def test_apply_result(self):
        """Test: ApplyResult cuenta operaciones, bytes y digest"""
        base = random_bytes(BS, seed=21)
        out = io.BytesIO()
        digest = ChecksumRegistry.get_accumulator(ChecksumType.SHA256)
        result = apply_operations(out, io.BytesIO(base), [CopyOperation(0), LiteralOperation(b'ab')],
                                  self.config, digest)
        self.assertEqual(result.operations, 2)
        self.assertEqual(result.bytes_written, BS + 2)
        self.assertEqual(result.digest, hashlib.sha256(base + b'ab').digest())

    def test_copy_beyond_eof(self):
        """Test: Copy fuera de la base es un PatchError"""
        base = random_bytes(BS, seed=22)
        with self.assertRaises(PatchError):
            self.rebuild(base, [CopyOperation(5)])

    def test_error_operation_raises_carried_error(self):
        """Test: ErrorOperation propaga su error"""
        with self.assertRaises(ValidationError):
            self.rebuild(b'', [LiteralOperation(b'x'), ErrorOperation(ValidationError("bad"))])

    def test_cancelled(self):
        """Test: cancelación antes de la primera operación"""
        cancel = threading.Event()
        cancel.set()
        out = io.BytesIO()
        with self.assertRaises(OperationCancelled):
            apply_operations(out, io.BytesIO(b''), [LiteralOperation(b'x')], self.config, cancel=cancel)
        self.assertEqual(out.getvalue(), b'')

    def test_unknown_operation(self):
        """Test: operación desconocida"""
        with self.assertRaises(PatchError):
            self.rebuild(b'', ['not an operation'])


if __name__ == '__main__':
    unittest.main()
