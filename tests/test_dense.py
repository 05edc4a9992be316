"""Tests for DenseMatrix element access, elementwise algebra and backend dispatch."""

import os
import sys
import warnings

import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import torch_dla.dense as dense_module
from torch_dla import (
    DenseMatrix, multiply, add, sub,
    create_backend, get_available_backends, is_scipy_available,
    BackendFailure, BoundsViolation,
)


BACKENDS = get_available_backends()


def from_rows(rows, backend=None):
    return DenseMatrix.from_tensor(torch.tensor(rows, dtype=torch.float64), backend=backend)


def random_spd(n, seed=0):
    g = torch.Generator().manual_seed(seed)
    X = torch.rand(n, n, generator=g, dtype=torch.float64)
    return X @ X.T + n * torch.eye(n, dtype=torch.float64)


class TestAllocation:
    """Allocation, shape and raw storage."""

    def test_alloc_zero_fill(self):
        A = DenseMatrix.alloc(3, 4, zero_fill=True)
        assert A.shape == (3, 4)
        assert A.data_length() == 12
        assert A.is_null()

    def test_alloc_as(self):
        A = DenseMatrix.alloc(2, 5)
        B = DenseMatrix.alloc_as(A, zero_fill=True)
        assert B.shape == A.shape
        assert B.backend is A.backend

    def test_invalid_shape(self):
        with pytest.raises(ValueError):
            DenseMatrix.alloc(-1, 2)

    def test_sizeof(self):
        A = DenseMatrix.alloc(3, 4)
        assert A.sizeof() == 3 * 8 + 12 * 8

    def test_row_major_layout(self):
        A = DenseMatrix.alloc(2, 3, zero_fill=True)
        A.set(1, 2, 7.0)
        assert A.data_get(1 * 3 + 2) == 7.0
        A.data_set(1, 4.0)
        assert A.get(0, 1) == 4.0

    def test_reshape_keeps_leading_elements(self):
        A = from_rows([[1, 2, 3], [4, 5, 6]], backend=create_backend('pytorch'))
        A.reshape(3, 2)
        assert A.shape == (3, 2)
        assert torch.equal(A.view(), torch.tensor([[1., 2.], [3., 4.], [5., 6.]], dtype=torch.float64))

    def test_free(self):
        A = DenseMatrix.alloc(3, 3)
        A.free()
        assert A.shape == (0, 0)
        assert A.data_length() == 0

    def test_swap(self):
        A = from_rows([[1, 2]])
        B = from_rows([[3], [4], [5]])
        A.swap(B)
        assert A.shape == (3, 1)
        assert B.shape == (1, 2)
        assert A.get(2, 0) == 5.0
        assert B.get(0, 1) == 2.0


class TestElementAccess:
    """Element and row/column updates."""

    def test_set_symm(self):
        A = DenseMatrix.alloc(3, 3, zero_fill=True)
        A.set_symm(0, 2, 1.5)
        assert A.get(0, 2) == 1.5
        assert A.get(2, 0) == 1.5

    def test_incr_decr_scale(self):
        A = DenseMatrix.alloc(2, 2, zero_fill=True)
        A.incr(0, 0, 3.0)
        A.decr(0, 0, 1.0)
        A.scale(0, 0, 4.0)
        assert A.get(0, 0) == 8.0

    def test_copy_element(self):
        A = DenseMatrix.alloc(2, 2, zero_fill=True)
        B = from_rows([[1, 2], [3, 4]])
        A.copy_element(0, 1, B, 1, 0)
        assert A.get(0, 1) == 3.0

    def test_row_col_updates(self):
        A = DenseMatrix.alloc(3, 3, zero_fill=True)
        A.set_row(1, 2.0)
        A.set_col(2, 5.0)
        A.scale_row(1, 3.0)
        assert A.get(1, 0) == 6.0
        assert A.get(1, 2) == 15.0
        assert A.get(0, 2) == 5.0
        assert A.sum_row(1) == 27.0
        assert A.sum_col(2) == 25.0

    def test_set_block_is_inclusive(self):
        A = DenseMatrix.alloc(4, 4, zero_fill=True)
        A.set_block(1, 2, 0, 1, 1.0)
        assert A.sum() == 4.0
        assert A.get(2, 1) == 1.0
        assert A.get(3, 1) == 0.0

    def test_get_block_and_diag(self):
        A = from_rows([[1, 2, 3], [4, 5, 6], [7, 8, 9]])
        block = A.get_block(1, 2, 1, 2)
        assert torch.equal(block.view(), torch.tensor([[5., 6.], [8., 9.]], dtype=torch.float64))
        diag = A.get_diag()
        assert diag.shape == (3, 1)
        assert diag.raw_col(0).tolist() == [1.0, 5.0, 9.0]
        assert A.trace() == 15.0

    def test_get_row_col(self):
        A = from_rows([[1, 2], [3, 4]])
        assert A.get_row(1).raw_row(0).tolist() == [3.0, 4.0]
        assert A.get_col(0).raw_col(0).tolist() == [1.0, 3.0]

    def test_bound_check(self, monkeypatch):
        monkeypatch.setattr(dense_module, 'BOUND_CHECK', True)
        A = DenseMatrix.alloc(2, 2, zero_fill=True)
        with pytest.raises(BoundsViolation):
            A.get(2, 0)
        with pytest.raises(IndexError):
            A.set(0, 5, 1.0)


class TestReductions:
    """Reductions and predicates."""

    def test_min_max(self):
        A = from_rows([[1, -2], [3, 0.5]])
        assert A.min() == -2.0
        assert A.max() == 3.0

    def test_empty_min_max(self):
        A = DenseMatrix.alloc(0, 0)
        assert A.min() == float('inf')
        assert A.max() == float('-inf')

    def test_predicates(self):
        A = from_rows([[1, 0], [2, 3]])
        assert A.is_positive()
        assert not A.is_negative()
        assert not A.is_null()
        assert not A.has_nan()
        A.set(0, 0, float('nan'))
        assert A.has_nan()

    def test_set_random(self):
        A = DenseMatrix.alloc(10, 10)
        A.set_random(torch.Generator().manual_seed(3))
        assert A.min() >= 0.0
        assert A.max() < 1.0


class TestElementwise:
    """add/sub/copy_from over the common leading part of the storages."""

    def test_add_sub(self):
        A = from_rows([[1, 2], [3, 4]])
        B = from_rows([[1, 1], [1, 1]])
        C = DenseMatrix.alloc(2, 2, zero_fill=True)
        add(2.0, A, 3.0, B, C)
        assert C.view().tolist() == [[5.0, 7.0], [9.0, 11.0]]
        sub(1.0, A, 1.0, B, C)
        assert C.view().tolist() == [[0.0, 1.0], [2.0, 3.0]]

    def test_copy_from_shorter_source(self):
        A = DenseMatrix.alloc(3, 3, zero_fill=True)
        B = from_rows([[1, 2], [3, 4]])
        A.copy_from(B, alpha=2.0, beta=1.0)
        # Only the first 4 elements of the flat storage change
        assert A.data_raw().tolist() == [3.0, 5.0, 7.0, 9.0, 0.0, 0.0, 0.0, 0.0, 0.0]

    def test_add_min_length(self):
        A = from_rows([[1, 2, 3]])
        B = from_rows([[10, 20]])
        C = DenseMatrix.alloc(1, 3, zero_fill=True)
        add(1.0, A, 1.0, B, C)
        assert C.raw_row(0).tolist() == [11.0, 22.0, 0.0]

    def test_parallel_flag(self):
        A = from_rows([[1, 2], [3, 4]])
        A.use_parallel(True)
        A.scale_all(2.0)
        A.use_parallel(False)
        A.incr_all(1.0)
        assert A.sum() == 24.0

    def test_thread_count_restored(self):
        saved = torch.get_num_threads()
        A = from_rows([[1, 2], [3, 4]])
        A.scale_all(2.0)
        assert torch.get_num_threads() == saved

    def test_single_thread_left_untouched(self, monkeypatch):
        calls = []
        monkeypatch.setattr(torch, 'get_num_threads', lambda: 1)
        monkeypatch.setattr(torch, 'set_num_threads', calls.append)
        A = from_rows([[1, 2], [3, 4]])
        A.scale_all(2.0)
        assert calls == []
        assert A.sum() == 20.0


@pytest.mark.parametrize("backend_name", BACKENDS)
class TestBackendAlgebra:
    """multiply, symmetric_eigen and invert on every available backend."""

    def test_multiply_identity(self, backend_name):
        backend = create_backend(backend_name)
        A = DenseMatrix.from_tensor(random_spd(5), backend=backend)
        I = DenseMatrix.from_tensor(torch.eye(5, dtype=torch.float64), backend=backend)
        C = DenseMatrix.alloc(5, 5, zero_fill=True, backend=backend)
        multiply(1.0, A, I, 0.0, C)
        torch.testing.assert_close(C.view(), A.view())

    def test_multiply_accumulates(self, backend_name):
        backend = create_backend(backend_name)
        g = torch.Generator().manual_seed(1)
        a = torch.rand(3, 4, generator=g, dtype=torch.float64)
        b = torch.rand(4, 2, generator=g, dtype=torch.float64)
        c = torch.rand(3, 2, generator=g, dtype=torch.float64)
        A = DenseMatrix.from_tensor(a, backend=backend)
        B = DenseMatrix.from_tensor(b, backend=backend)
        C = DenseMatrix.from_tensor(c, backend=backend)
        multiply(2.0, A, B, 0.5, C)
        torch.testing.assert_close(C.view(), 2.0 * a @ b + 0.5 * c)

    def test_eigen_diagonal(self, backend_name):
        backend = create_backend(backend_name)
        A = from_rows([[2, 0], [0, 3]], backend=backend)
        eigenvalues = A.symmetric_eigen('v')
        torch.testing.assert_close(eigenvalues, torch.tensor([2.0, 3.0], dtype=torch.float64))

        V = torch.stack([A.eigenvector(0), A.eigenvector(1)], dim=1)
        torch.testing.assert_close(V.T @ V, torch.eye(2, dtype=torch.float64))
        assert abs(abs(float(A.eigenvector(0)[0])) - 1.0) < 1e-12

    def test_eigen_values_only(self, backend_name):
        backend = create_backend(backend_name)
        a = random_spd(6, seed=2)
        A = DenseMatrix.from_tensor(a, backend=backend)
        eigenvalues = A.symmetric_eigen('n')
        torch.testing.assert_close(eigenvalues, torch.linalg.eigvalsh(a))

    def test_eigenpairs(self, backend_name):
        backend = create_backend(backend_name)
        a = random_spd(8, seed=4)
        A = DenseMatrix.from_tensor(a, backend=backend)
        eigenvalues = A.symmetric_eigen('v')
        assert torch.all(eigenvalues[1:] >= eigenvalues[:-1])
        for n in range(8):
            v = A.eigenvector(n)
            torch.testing.assert_close(a @ v, eigenvalues[n] * v)

    def test_invert_twice(self, backend_name):
        backend = create_backend(backend_name)
        a = random_spd(6, seed=5)
        A = DenseMatrix.from_tensor(a, backend=backend)
        A.invert()
        torch.testing.assert_close(A.view() @ a, torch.eye(6, dtype=torch.float64))
        A.invert()
        torch.testing.assert_close(A.view(), a)

    def test_eigen_needs_square(self, backend_name):
        A = DenseMatrix.alloc(2, 3, zero_fill=True, backend=create_backend(backend_name))
        with pytest.raises(ValueError):
            A.symmetric_eigen('n')
        with pytest.raises(ValueError):
            A.invert()


class TestBackendFailures:
    """Status handling of singular inversions."""

    def test_reference_backend_warns(self):
        A = from_rows([[1, 2], [2, 4]], backend=create_backend('pytorch'))
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            A.invert()
        assert any("singular" in str(w.message) for w in caught)

    @pytest.mark.skipif(not is_scipy_available(), reason="SciPy not available")
    def test_vendor_backend_raises(self):
        A = from_rows([[1, 2], [2, 4]], backend=create_backend('scipy'))
        with pytest.raises(BackendFailure) as info:
            A.invert()
        assert info.value.status != 0
        assert "dgetr" in info.value.operation
