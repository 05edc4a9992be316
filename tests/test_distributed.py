"""
Tests for DistributedMatrix/DistributedVector in a single process.

Multi-process runs are in test_distributed_multiprocess.py.
"""

import io
import os
import sys
import math

import numpy as np
import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from torch_dla import (
    ProcessGroup, DistributedMatrix, DistributedVector, KrylovSchur,
    BoundsViolation, write_vector,
)

MODES = ['partitioned', 'replicated']


def fill_tridiagonal(A, n, diagonal=2.0, off=-1.0):
    for p in range(n):
        A.set(p, p, diagonal)
        if p > 0:
            A.set(p, p - 1, off)
        if p < n - 1:
            A.set(p, p + 1, off)


def tridiagonal_dense(n, diagonal=2.0, off=-1.0):
    return (torch.diag(torch.full((n,), diagonal, dtype=torch.float64))
            + torch.diag(torch.full((n - 1,), off, dtype=torch.float64), 1)
            + torch.diag(torch.full((n - 1,), off, dtype=torch.float64), -1))


def fill_graded(A, n):
    """Tridiagonal with diagonal 1..n: well separated eigenvalues"""
    for p in range(n):
        A.set(p, p, float(p + 1))
        if p > 0:
            A.set(p, p - 1, -1.0)
        if p < n - 1:
            A.set(p, p + 1, -1.0)


def graded_dense(n):
    return (torch.diag(torch.arange(1, n + 1, dtype=torch.float64))
            - torch.diag(torch.ones(n - 1, dtype=torch.float64), 1)
            - torch.diag(torch.ones(n - 1, dtype=torch.float64), -1))


@pytest.fixture
def group():
    with ProcessGroup(rank=0, world_size=1) as g:
        yield g


@pytest.mark.parametrize("mode", MODES)
class TestAssembly:
    """alloc -> set -> build -> gather."""

    def test_tridiagonal_gather(self, group, mode):
        n = 20
        A = DistributedMatrix.alloc(group, n, n, non_zeros=(3, 0), mode=mode)
        fill_tridiagonal(A, n)
        A.build()

        M = A.gather()
        assert torch.equal(M.view(), tridiagonal_dense(n))

    def test_insert_semantics(self, group, mode):
        A = DistributedMatrix.alloc(group, 3, 3, mode=mode)
        A.set(1, 1, 5.0)
        A.set(1, 1, 7.0)
        A.set(0, 2, 1.0)
        A.build()
        assert A.get(1, 1) == 7.0
        assert A.get(0, 2) == 1.0
        assert A.get(2, 0) == 0.0

    def test_exceeding_estimate(self, group, mode):
        n = 10
        A = DistributedMatrix.alloc(group, n, n, non_zeros=(1, 0), mode=mode)
        for p in range(n):
            for q in range(n):
                A.set(p, q, float(p * n + q))
        A.build()
        expected = torch.arange(n * n, dtype=torch.float64).reshape(n, n)
        assert torch.equal(A.gather().view(), expected)

    def test_set_after_build_needs_rebuild(self, group, mode):
        A = DistributedMatrix.alloc(group, 2, 2, mode=mode)
        A.set(0, 0, 1.0)
        A.build()
        A.set(1, 1, 2.0)
        with pytest.raises(RuntimeError):
            A.gather()
        A.build()
        assert A.gather().view().tolist() == [[1.0, 0.0], [0.0, 2.0]]

    def test_use_before_build(self, group, mode):
        A = DistributedMatrix.alloc(group, 4, 4, mode=mode)
        with pytest.raises(RuntimeError):
            A.sparse_eigen(1)

    def test_out_of_range(self, group, mode):
        A = DistributedMatrix.alloc(group, 4, 4, mode=mode)
        with pytest.raises(BoundsViolation):
            A.set(4, 0, 1.0)
        with pytest.raises(BoundsViolation):
            A.set(0, -1, 1.0)

    def test_matvec(self, group, mode):
        n = 12
        A = DistributedMatrix.alloc(group, n, n, non_zeros=(3, 0), mode=mode)
        fill_tridiagonal(A, n)
        A.build()

        x = DistributedVector.alloc(group, n, mode=mode)
        for p in range(n):
            x.set(p, float(p))
        x.build()

        y = A.matvec(x)
        expected = tridiagonal_dense(n) @ torch.arange(n, dtype=torch.float64)
        torch.testing.assert_close(y.gather(), expected)

    def test_free(self, group, mode):
        A = DistributedMatrix.alloc(group, 4, 4, mode=mode)
        A.build()
        A.free()
        assert A.state == 'unbuilt'

    def test_invalid_alloc(self, group, mode):
        with pytest.raises(ValueError):
            DistributedMatrix.alloc(group, 0, 4, mode=mode)
        with pytest.raises(ValueError):
            DistributedMatrix.alloc(group, 4, 4, non_zeros=(-1, 0), mode=mode)


class TestPartitionedEigen:
    """Krylov-Schur through DistributedMatrix.sparse_eigen."""

    def test_largest(self, group):
        n = 60
        A = DistributedMatrix.alloc(group, n, n, non_zeros=(3, 0), mode='partitioned')
        fill_graded(A, n)
        A.build()

        nconv = A.sparse_eigen(count=3, max_iterations=500, tolerance=1e-10, upper=True)
        assert nconv >= 3

        reference = torch.linalg.eigvalsh(graded_dense(n)).flip(0)
        for i in range(3):
            value, vector = A.eigenpair(i)
            assert math.isclose(value, float(reference[i]), rel_tol=1e-8)

            v = vector.gather()
            torch.testing.assert_close(v.norm(), torch.tensor(1.0, dtype=torch.float64))
            residual = graded_dense(n) @ v - value * v
            assert float(residual.norm()) < 1e-6

    def test_smallest(self, group):
        n = 60
        A = DistributedMatrix.alloc(group, n, n, non_zeros=(3, 0), mode='partitioned')
        fill_graded(A, n)
        A.build()

        nconv = A.sparse_eigen(count=2, max_iterations=500, tolerance=1e-10, upper=False)
        assert nconv >= 2

        reference = torch.linalg.eigvalsh(graded_dense(n))
        for i in range(2):
            value, _ = A.eigenpair(i)
            assert math.isclose(value, float(reference[i]), rel_tol=1e-8)

    def test_small_problem_full_basis(self, group):
        n = 6
        A = DistributedMatrix.alloc(group, n, n, non_zeros=(3, 0), mode='partitioned')
        fill_tridiagonal(A, n)
        A.build()

        nconv = A.sparse_eigen(count=2, max_iterations=10, tolerance=1e-12, upper=True)
        assert nconv >= 2

        expected = [2.0 - 2.0 * math.cos(k * math.pi / (n + 1)) for k in range(n, 0, -1)]
        for i in range(2):
            assert math.isclose(A.eigenpair(i)[0], expected[i], rel_tol=1e-10)

    def test_eigenpair_before_solve(self, group):
        A = DistributedMatrix.alloc(group, 3, 3, mode='partitioned')
        A.build()
        with pytest.raises(RuntimeError):
            A.eigenpair(0)

    def test_eigenpair_out_of_range(self, group):
        n = 8
        A = DistributedMatrix.alloc(group, n, n, non_zeros=(3, 0), mode='partitioned')
        fill_graded(A, n)
        A.build()
        nconv = A.sparse_eigen(count=1, max_iterations=50, tolerance=1e-10)
        with pytest.raises(IndexError):
            A.eigenpair(nconv)


class TestReplicatedEigen:
    """Dense fallback: full spectrum in ascending order, upper ignored."""

    def test_full_spectrum(self, group):
        n = 10
        A = DistributedMatrix.alloc(group, n, n, mode='replicated')
        fill_tridiagonal(A, n)
        A.build()

        nconv = A.sparse_eigen(count=2, upper=True)
        assert nconv == n

        reference = torch.linalg.eigvalsh(tridiagonal_dense(n))
        values = [A.eigenpair(i)[0] for i in range(n)]
        torch.testing.assert_close(torch.tensor(values, dtype=torch.float64), reference)

        value, vector = A.eigenpair(n - 1)
        v = vector.gather()
        torch.testing.assert_close(tridiagonal_dense(n) @ v, value * v)


class TestKrylovSchur:
    """The solver on a plain local operator."""

    def test_diagonal_operator(self):
        d = torch.arange(1, 41, dtype=torch.float64)
        solver = KrylovSchur(
            lambda X: d[:, None] * X,
            lambda t: t,
            n=40, first=0, last=40, nev=4,
            max_iterations=200, tolerance=1e-12, largest=True,
        )
        nconv = solver.solve()
        assert nconv >= 4
        torch.testing.assert_close(solver.eigenvalues[:4], torch.tensor([40., 39., 38., 37.], dtype=torch.float64))

    def test_invariant_start(self):
        # Identity: the Krylov space of any start vector is one-dimensional
        solver = KrylovSchur(
            lambda X: X.clone(),
            lambda t: t,
            n=10, first=0, last=10, nev=3,
            max_iterations=5, tolerance=1e-10,
        )
        assert solver.solve() >= 3
        torch.testing.assert_close(solver.eigenvalues[:3], torch.ones(3, dtype=torch.float64))

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            KrylovSchur(lambda X: X, lambda t: t, n=5, first=0, last=5, nev=0)


@pytest.mark.parametrize("mode", MODES)
class TestVectorWriter:
    """write_vector with a single process."""

    def test_write_range(self, group, mode):
        x = DistributedVector.alloc(group, 10, mode=mode)
        for p in range(10):
            x.set(p, float(p))
        x.build()

        stream = io.BytesIO()
        write_vector(x, 2, 7, stream)
        values = np.frombuffer(stream.getvalue(), dtype=np.float64)
        assert values.tolist() == [2.0, 3.0, 4.0, 5.0, 6.0]

    def test_invalid_range(self, group, mode):
        x = DistributedVector.alloc(group, 10, mode=mode)
        x.build()
        for start, end in [(-1, 3), (5, 5), (3, 11)]:
            with pytest.raises(ValueError):
                write_vector(x, start, end, io.BytesIO())


class TestDistributedVector:
    """Element ownership in a single process."""

    def test_owns_everything(self, group):
        x = DistributedVector.alloc(group, 5, mode='partitioned')
        assert x.ownership_range == (0, 5)
        x.set(4, 2.0)
        assert x.get(4) == 2.0

    def test_gather_requires_build(self, group):
        x = DistributedVector.alloc(group, 5)
        with pytest.raises(RuntimeError):
            x.gather()

    def test_out_of_range(self, group):
        x = DistributedVector.alloc(group, 5)
        with pytest.raises(BoundsViolation):
            x.set(5, 1.0)
