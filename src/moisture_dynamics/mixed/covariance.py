"""
Positive-definite covariance structures for random effects

Covariances are optimized through unconstrained vectors:
- diag: log standard deviations
- symm: log-Cholesky (log of the Cholesky diagonal, raw off-diagonal entries)
"""
import logging
from typing import Dict, List, Sequence
import numpy as np

logger = logging.getLogger(__name__)

STRUCTURES = ('diag', 'symm')


class PositiveDefiniteMatrix:
    """
    Parametrised covariance matrix of q random effects
    """

    def __init__(self, names: Sequence[str], structure: str = 'diag'):
        if structure not in STRUCTURES:
            raise ValueError(f"Unknown covariance structure '{structure}', expected one of {STRUCTURES}")
        if not names:
            raise ValueError("A covariance structure needs at least one random effect")
        self.names = list(names)
        self.structure = structure

    @property
    def q(self) -> int:
        return len(self.names)

    @property
    def n_theta(self) -> int:
        if self.structure == 'diag':
            return self.q
        return self.q * (self.q + 1) // 2

    def cholesky(self, theta: np.ndarray) -> np.ndarray:
        """Lower-triangular factor L with covariance = L @ L.T"""
        theta = np.asarray(theta, dtype=float)
        if len(theta) != self.n_theta:
            raise ValueError(f"Expected {self.n_theta} parameters, got {len(theta)}")
        if self.structure == 'diag':
            return np.diag(np.exp(theta))
        L = np.zeros((self.q, self.q))
        L[np.tril_indices(self.q)] = theta
        L[np.diag_indices(self.q)] = np.exp(np.diag(L))
        return L

    def to_matrix(self, theta: np.ndarray) -> np.ndarray:
        L = self.cholesky(theta)
        return L @ L.T

    def from_matrix(self, matrix: np.ndarray) -> np.ndarray:
        """Unconstrained parameters of a covariance matrix (a tiny ridge keeps it positive definite)"""
        matrix = np.asarray(matrix, dtype=float)
        if matrix.shape != (self.q, self.q):
            raise ValueError(f"Expected a {self.q}x{self.q} matrix, got {matrix.shape}")
        diag = np.clip(np.diag(matrix), 1e-12, None)
        if self.structure == 'diag':
            return 0.5 * np.log(diag)
        ridge = 1e-8 * np.max(diag)
        try:
            L = np.linalg.cholesky(matrix + ridge * np.eye(self.q))
        except np.linalg.LinAlgError:
            logger.warning("Covariance start is not positive definite, dropping correlations")
            L = np.diag(np.sqrt(diag))
        theta_matrix = L.copy()
        theta_matrix[np.diag_indices(self.q)] = np.log(np.diag(L))
        return theta_matrix[np.tril_indices(self.q)]

    def sd(self, theta: np.ndarray) -> np.ndarray:
        return np.sqrt(np.diag(self.to_matrix(theta)))

    def corr(self, theta: np.ndarray) -> np.ndarray:
        matrix = self.to_matrix(theta)
        sd = np.sqrt(np.diag(matrix))
        return matrix / np.outer(sd, sd)

    def __repr__(self) -> str:
        return f"PositiveDefiniteMatrix({self.names}, structure='{self.structure}')"


class BlockCovariance:
    """
    One covariance structure per grouping level, outermost level first
    """

    def __init__(self, blocks: Dict[str, PositiveDefiniteMatrix]):
        if not blocks:
            raise ValueError("At least one grouping level needs random effects")
        self.blocks = dict(blocks)

    @property
    def levels(self) -> List[str]:
        return list(self.blocks)

    @property
    def n_theta(self) -> int:
        return sum(block.n_theta for block in self.blocks.values())

    def split(self, theta: np.ndarray) -> Dict[str, np.ndarray]:
        theta = np.asarray(theta, dtype=float)
        if len(theta) != self.n_theta:
            raise ValueError(f"Expected {self.n_theta} parameters, got {len(theta)}")
        parts = {}
        start = 0
        for level, block in self.blocks.items():
            parts[level] = theta[start:start + block.n_theta]
            start += block.n_theta
        return parts

    def choleskys(self, theta: np.ndarray) -> Dict[str, np.ndarray]:
        return {level: self.blocks[level].cholesky(part) for level, part in self.split(theta).items()}

    def matrices(self, theta: np.ndarray) -> Dict[str, np.ndarray]:
        return {level: self.blocks[level].to_matrix(part) for level, part in self.split(theta).items()}

    def from_matrices(self, matrices: Dict[str, np.ndarray]) -> np.ndarray:
        return np.concatenate([self.blocks[level].from_matrix(matrices[level]) for level in self.blocks])
