"""
Krylov-Schur eigensolver for symmetric operators with row-partitioned vectors.

Each process holds rows [first, last) of every basis vector. The operator
is applied to local blocks, and every inner product is completed by a
global sum, so all processes follow the same iteration and converge
together.

Algorithm (thick-restart Lanczos, equivalent to Krylov-Schur for symmetric
problems):

1. Expand an orthonormal basis V to ncv vectors with full
   reorthogonalization (two passes), keeping H = V^T A V
2. Rayleigh-Ritz on H, sort Ritz pairs so the wanted end comes first
3. Residual of Ritz pair i is |beta * s[ncv-1, i]|; count converged pairs
4. Keep the leading Ritz vectors, lock in their values on the diagonal of H,
   and restart from step 1
"""

from typing import Callable, Optional, Tuple

import torch
from torch import Tensor

# Applies the operator to local row blocks: [n_local, m] -> [n_local, m]
Operator = Callable[[Tensor], Tensor]
# In-place global sum
Reduction = Callable[[Tensor], Tensor]


class KrylovSchur:
    """
    Largest or smallest eigenpairs of a symmetric operator.

    Parameters
    ----------
    apply : callable
        Operator on local row blocks
    reduce : callable
        In-place global sum of a tensor
    n : int
        Global dimension
    first, last : int
        Local row range [first, last)
    nev : int
        Number of wanted eigenpairs
    ncv : int, optional
        Basis size. Default: min(2*nev + 10, n).
    max_iterations : int
        Maximum number of restarts
    tolerance : float
        Relative residual tolerance
    largest : bool
        Largest (True) or smallest (False) algebraic eigenvalues
    seed : int
        Seed of the start vector, identical on every process
    verbose : bool
        Print convergence history
    """

    def __init__(
        self,
        apply: Operator,
        reduce: Reduction,
        n: int,
        first: int,
        last: int,
        nev: int,
        ncv: Optional[int] = None,
        max_iterations: int = 100,
        tolerance: float = 1e-8,
        largest: bool = True,
        seed: int = 0,
        verbose: bool = False,
        dtype: torch.dtype = torch.float64,
    ):
        if n <= 0:
            raise ValueError(f"Operator dimension must be positive, got {n}")
        if nev <= 0:
            raise ValueError(f"Number of eigenpairs must be positive, got {nev}")
        if max_iterations <= 0:
            raise ValueError(f"max_iterations must be positive, got {max_iterations}")

        self.apply = apply
        self.reduce = reduce
        self.n = n
        self.first = first
        self.last = last
        self.nev = min(nev, n)
        self.ncv = min(ncv if ncv is not None else 2 * self.nev + 10, n)
        self.ncv = max(self.ncv, self.nev)
        self.max_iterations = max_iterations
        self.tolerance = tolerance
        self.largest = largest
        self.verbose = verbose
        self.dtype = dtype

        self.generator = torch.Generator().manual_seed(seed)

        # Results
        self.eigenvalues: Optional[Tensor] = None
        self.eigenvectors: Optional[Tensor] = None
        self.residuals: Optional[Tensor] = None
        self.converged = 0
        self.iterations = 0

    # =========================================================================
    # Distributed vector kernels
    # =========================================================================

    def _dot(self, V: Tensor, w: Tensor) -> Tensor:
        """Global V^T w"""
        return self.reduce(V.T @ w)

    def _norm(self, w: Tensor) -> float:
        return float(self.reduce((w @ w).reshape(1)).sqrt())

    def _random_local(self) -> Tensor:
        """Slice of a global random vector, the same on every process"""
        full = torch.rand(self.n, generator=self.generator, dtype=self.dtype) - 0.5
        return full[self.first:self.last].clone()

    def _orthogonalize(self, V: Tensor, w: Tensor) -> Tuple[Tensor, Tensor]:
        """Project w out of span(V) with two Gram-Schmidt passes; returns (w, V^T w)"""
        h = self._dot(V, w)
        w = w - V @ h
        c = self._dot(V, w)
        w = w - V @ c
        return w, h + c

    # =========================================================================
    # Iteration
    # =========================================================================

    def _expand(self, V: Tensor, H: Tensor, k: int) -> float:
        """
        Lanczos steps k..ncv-1, filling V[:, k+1:ncv+1] and H[:, k:ncv].

        Returns the norm of the final residual vector.
        """
        beta = 0.0
        for j in range(k, self.ncv):
            w = self.apply(V[:, j:j + 1])[:, 0]
            w, h = self._orthogonalize(V[:, :j + 1], w)

            H[:j + 1, j] = h
            H[j, :j + 1] = h

            beta = self._norm(w)
            scale = max(float(h.abs().max()), 1.0)
            if beta <= torch.finfo(self.dtype).eps * scale:
                # Invariant subspace: continue with any vector orthogonal to V
                beta = 0.0
                if j + 1 < self.ncv:
                    w, _ = self._orthogonalize(V[:, :j + 1], self._random_local())
                    V[:, j + 1] = w / self._norm(w)
                else:
                    V[:, j + 1] = 0.0
            else:
                V[:, j + 1] = w / beta

        return beta

    def _ritz(self, H: Tensor):
        theta, S = torch.linalg.eigh(H)
        if self.largest:
            theta = theta.flip(0)
            S = S.flip(1)
        return theta, S

    def _count_converged(self, theta: Tensor, residuals: Tensor) -> int:
        tiny = torch.finfo(self.dtype).tiny
        ok = residuals <= self.tolerance * theta.abs().clamp(min=tiny)
        count = 0
        for flag in ok.tolist():
            if not flag:
                break
            count += 1
        return count

    def solve(self) -> int:
        """
        Run the solver.

        Returns
        -------
        int
            Number of converged eigenpairs (may exceed nev)
        """
        n_local = self.last - self.first
        ncv = self.ncv

        V = torch.zeros(n_local, ncv + 1, dtype=self.dtype)
        H = torch.zeros(ncv, ncv, dtype=self.dtype)

        v0 = self._random_local()
        V[:, 0] = v0 / self._norm(v0)

        k = 0
        for iteration in range(1, self.max_iterations + 1):
            beta = self._expand(V, H, k)
            theta, S = self._ritz(H)
            residuals = (beta * S[ncv - 1, :]).abs()
            converged = self._count_converged(theta, residuals)

            if self.verbose:
                print(f"  Krylov-Schur {iteration}: converged {converged}/{self.nev}, "
                      f"residual {float(residuals[:self.nev].max()):.2e}")

            self.iterations = iteration
            if converged >= self.nev or iteration == self.max_iterations:
                break

            # Thick restart: keep the leading Ritz vectors
            keep = min(max(converged + (ncv - converged) // 2, self.nev), ncv - 1)
            V[:, :keep] = V[:, :ncv] @ S[:, :keep]
            V[:, keep] = V[:, ncv]

            coupling = beta * S[ncv - 1, :keep]
            H.zero_()
            H[:keep, :keep] = torch.diag(theta[:keep])
            H[keep, :keep] = coupling
            H[:keep, keep] = coupling
            k = keep

        self.converged = converged
        self.eigenvalues = theta
        self.eigenvectors = V[:, :ncv] @ S
        self.residuals = residuals
        return converged
