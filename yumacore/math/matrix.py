"""Square fixed-point matrices with interchangeable dense and sparse backings.

The epoch stages are written once against :class:`Matrix`. :class:`DenseMatrix`
keeps a full ``n x n`` numpy grid of Python ints, :class:`SparseMatrix` keeps
one ordered ``(col, value)`` list per row. Each operation evaluates the same
integer expression per entry in both backings, so results are identical.
Operations never mutate the receiver; they return a new matrix.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Sequence, Tuple, Type

import numpy as np

from yumacore.math.fixed import ONE, dot

Row = List[Tuple[int, int]]
PairFn = Callable[..., int]


class Matrix(ABC):
    """Capability set shared by both backings."""

    def __init__(self, n: int):
        self._n = n

    @property
    def n(self) -> int:
        return self._n

    @classmethod
    @abstractmethod
    def from_rows(cls, n: int, rows: Sequence[Sequence[Tuple[int, int]]]) -> "Matrix":
        ...

    @classmethod
    def zeros(cls, n: int) -> "Matrix":
        return cls.from_rows(n, [[] for _ in range(n)])

    @abstractmethod
    def to_rows(self) -> List[Row]:
        """Canonical form: zeros dropped, columns ascending."""

    def to_dense(self) -> List[List[int]]:
        grid = [[0] * self.n for _ in range(self.n)]
        for i, row in enumerate(self.to_rows()):
            for j, value in row:
                grid[i][j] = value
        return grid

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Matrix):
            return NotImplemented
        return self.n == other.n and self.to_rows() == other.to_rows()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(n={self.n}, rows={self.to_rows()!r})"

    @abstractmethod
    def mask_rows(self, mask: Sequence[bool]) -> "Matrix":
        """Zero every row ``i`` with ``mask[i]``."""

    @abstractmethod
    def mask_diag(self, mask: Sequence[bool]) -> "Matrix":
        """Zero the diagonal entry ``(i, i)`` of every row with ``mask[i]``."""

    @abstractmethod
    def mask_outdated(self, last_update: Sequence[int], registered_at: Sequence[int]) -> "Matrix":
        """Zero ``(i, j)`` when slot ``j`` registered after row ``i`` was last updated."""

    @abstractmethod
    def zero_col(self, col: int) -> "Matrix":
        ...

    @abstractmethod
    def row_sums(self) -> List[int]:
        ...

    @abstractmethod
    def row_normalize(self) -> "Matrix":
        """Scale each nonzero row to sum to one; zero rows stay empty."""

    def cap_rows(self) -> "Matrix":
        """Rescale rows summing above one so they sum to one; other rows are kept."""
        sums = self.row_sums()
        return self.zip_with([], lambda i, j, v: (v * ONE) // sums[i] if sums[i] > ONE else v)

    @abstractmethod
    def row_hadamard(self, vec: Sequence[int]) -> "Matrix":
        """Multiply row ``i`` by ``vec[i]``."""

    @abstractmethod
    def stake_weighted_col_sum(self, stake: Sequence[int]) -> List[int]:
        """``sum_i stake[i] * w[i][j]`` per column."""

    @abstractmethod
    def stake_weighted_nonzero_count(self, stake: Sequence[int]) -> List[int]:
        """``sum_i stake[i]`` over rows with a nonzero entry in column ``j``."""

    @abstractmethod
    def matvec(self, vec: Sequence[int]) -> List[int]:
        """``sum_j w[i][j] * vec[j]`` per row."""

    @abstractmethod
    def column_scores(self, rows: Sequence[int]) -> List[List[int]]:
        """Per column, the values held by ``rows`` in that order (zeros included)."""

    @abstractmethod
    def clip_cols(self, limits: Sequence[int]) -> "Matrix":
        """``min(w[i][j], limits[j])`` elementwise."""

    @abstractmethod
    def zip_with(self, others: Sequence["Matrix"], fn: PairFn) -> "Matrix":
        """Combine entrywise with ``fn(i, j, own, *others)``.

        ``fn`` is only evaluated where at least one operand is nonzero and
        must return zero when all operands are zero.
        """


class DenseMatrix(Matrix):
    def __init__(self, data: np.ndarray):
        super().__init__(int(data.shape[0]))
        self.data = data

    @classmethod
    def from_rows(cls, n: int, rows: Sequence[Sequence[Tuple[int, int]]]) -> "DenseMatrix":
        data = np.zeros((n, n), dtype=object)
        for i, row in enumerate(rows):
            for j, value in row:
                data[i, j] = int(value)
        return cls(data)

    def to_rows(self) -> List[Row]:
        return [
            [(j, int(v)) for j, v in enumerate(self.data[i]) if v != 0]
            for i in range(self.n)
        ]

    def _copy(self) -> np.ndarray:
        return self.data.copy()

    def mask_rows(self, mask: Sequence[bool]) -> "DenseMatrix":
        data = self._copy()
        data[np.asarray(mask, dtype=bool), :] = 0
        return DenseMatrix(data)

    def mask_diag(self, mask: Sequence[bool]) -> "DenseMatrix":
        data = self._copy()
        idx = np.flatnonzero(np.asarray(mask, dtype=bool))
        data[idx, idx] = 0
        return DenseMatrix(data)

    def mask_outdated(self, last_update: Sequence[int], registered_at: Sequence[int]) -> "DenseMatrix":
        data = self._copy()
        outdated = (
            np.asarray(registered_at, dtype=np.int64)[None, :]
            > np.asarray(last_update, dtype=np.int64)[:, None]
        )
        data[outdated] = 0
        return DenseMatrix(data)

    def zero_col(self, col: int) -> "DenseMatrix":
        data = self._copy()
        data[:, col] = 0
        return DenseMatrix(data)

    def row_sums(self) -> List[int]:
        return [int(v) for v in self.data.sum(axis=1)] if self.n else []

    def row_normalize(self) -> "DenseMatrix":
        if not self.n:
            return DenseMatrix(self._copy())
        sums = self.data.sum(axis=1)
        safe = np.asarray([s if s != 0 else 1 for s in sums], dtype=object)
        return DenseMatrix((self.data * ONE) // safe[:, None])

    def row_hadamard(self, vec: Sequence[int]) -> "DenseMatrix":
        v = np.asarray(list(vec), dtype=object).reshape(self.n, 1)
        return DenseMatrix((self.data * v) // ONE)

    def stake_weighted_col_sum(self, stake: Sequence[int]) -> List[int]:
        if not self.n:
            return []
        s = np.asarray(list(stake), dtype=object).reshape(self.n, 1)
        return [int(v) for v in ((self.data * s) // ONE).sum(axis=0)]

    def stake_weighted_nonzero_count(self, stake: Sequence[int]) -> List[int]:
        if not self.n:
            return []
        s = np.asarray(list(stake), dtype=object).reshape(self.n, 1)
        nonzero = (self.data != 0).astype(bool)
        return [int(v) for v in np.where(nonzero, s, 0).astype(object).sum(axis=0)]

    def matvec(self, vec: Sequence[int]) -> List[int]:
        if not self.n:
            return []
        v = np.asarray(list(vec), dtype=object).reshape(1, self.n)
        return [int(x) for x in ((self.data * v) // ONE).sum(axis=1)]

    def column_scores(self, rows: Sequence[int]) -> List[List[int]]:
        picked = self.data[list(rows), :]
        return [[int(v) for v in picked[:, j]] for j in range(self.n)]

    def clip_cols(self, limits: Sequence[int]) -> "DenseMatrix":
        c = np.asarray(list(limits), dtype=object).reshape(1, self.n)
        return DenseMatrix(np.minimum(self.data, c).astype(object))

    def zip_with(self, others: Sequence[Matrix], fn: PairFn) -> "DenseMatrix":
        grids = [self.data] + [np.asarray(_dense_data(o)) for o in others]
        touched = np.zeros((self.n, self.n), dtype=bool)
        for grid in grids:
            touched |= (grid != 0).astype(bool)
        out = np.zeros((self.n, self.n), dtype=object)
        for i, j in np.argwhere(touched):
            i, j = int(i), int(j)
            out[i, j] = fn(i, j, *(int(g[i, j]) for g in grids))
        return DenseMatrix(out)


def _dense_data(matrix: Matrix) -> np.ndarray:
    if isinstance(matrix, DenseMatrix):
        return matrix.data
    return DenseMatrix.from_rows(matrix.n, matrix.to_rows()).data


class SparseMatrix(Matrix):
    def __init__(self, rows: List[Row]):
        super().__init__(len(rows))
        self.rows = rows

    @classmethod
    def from_rows(cls, n: int, rows: Sequence[Sequence[Tuple[int, int]]]) -> "SparseMatrix":
        out: List[Row] = [[] for _ in range(n)]
        for i, row in enumerate(rows):
            merged: Dict[int, int] = {}
            for j, value in row:
                merged[int(j)] = int(value)
            out[i] = sorted(merged.items())
        return cls(out)

    def to_rows(self) -> List[Row]:
        return [[(j, v) for j, v in row if v != 0] for row in self.rows]

    def mask_rows(self, mask: Sequence[bool]) -> "SparseMatrix":
        return SparseMatrix([[] if mask[i] else list(row) for i, row in enumerate(self.rows)])

    def mask_diag(self, mask: Sequence[bool]) -> "SparseMatrix":
        return SparseMatrix(
            [[(j, v) for j, v in row if not (mask[i] and j == i)] for i, row in enumerate(self.rows)]
        )

    def mask_outdated(self, last_update: Sequence[int], registered_at: Sequence[int]) -> "SparseMatrix":
        return SparseMatrix(
            [
                [(j, v) for j, v in row if not registered_at[j] > last_update[i]]
                for i, row in enumerate(self.rows)
            ]
        )

    def zero_col(self, col: int) -> "SparseMatrix":
        return SparseMatrix([[(j, v) for j, v in row if j != col] for row in self.rows])

    def row_sums(self) -> List[int]:
        return [sum(v for _, v in row) for row in self.rows]

    def row_normalize(self) -> "SparseMatrix":
        out: List[Row] = []
        for row in self.rows:
            total = sum(v for _, v in row)
            if total == 0:
                out.append([])
            else:
                out.append([(j, (v * ONE) // total) for j, v in row])
        return SparseMatrix(out)

    def row_hadamard(self, vec: Sequence[int]) -> "SparseMatrix":
        return SparseMatrix(
            [[(j, (v * vec[i]) // ONE) for j, v in row] for i, row in enumerate(self.rows)]
        )

    def stake_weighted_col_sum(self, stake: Sequence[int]) -> List[int]:
        out = [0] * self.n
        for i, row in enumerate(self.rows):
            for j, v in row:
                out[j] += (v * stake[i]) // ONE
        return out

    def stake_weighted_nonzero_count(self, stake: Sequence[int]) -> List[int]:
        out = [0] * self.n
        for i, row in enumerate(self.rows):
            for j, v in row:
                if v != 0:
                    out[j] += stake[i]
        return out

    def matvec(self, vec: Sequence[int]) -> List[int]:
        return [dot([v for _, v in row], [vec[j] for j, _ in row]) for row in self.rows]

    def column_scores(self, rows: Sequence[int]) -> List[List[int]]:
        scores = [[0] * len(rows) for _ in range(self.n)]
        for k, i in enumerate(rows):
            for j, v in self.rows[i]:
                scores[j][k] = v
        return scores

    def clip_cols(self, limits: Sequence[int]) -> "SparseMatrix":
        return SparseMatrix([[(j, min(v, limits[j])) for j, v in row] for row in self.rows])

    def zip_with(self, others: Sequence[Matrix], fn: PairFn) -> "SparseMatrix":
        operands = [self] + [o if isinstance(o, SparseMatrix) else SparseMatrix(o.to_rows()) for o in others]
        out: List[Row] = []
        for i in range(self.n):
            lookups = [dict(m.rows[i]) for m in operands]
            cols = sorted({j for lookup in lookups for j, v in lookup.items() if v != 0})
            out.append([(j, fn(i, j, *(lookup.get(j, 0) for lookup in lookups))) for j in cols])
        return SparseMatrix(out)


BACKENDS: Dict[str, Type[Matrix]] = {
    "dense": DenseMatrix,
    "sparse": SparseMatrix,
}
