"""Per-document bootstrap weights."""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray


class BootstrapType(enum.Enum):
    NO = "No"
    BERNOULLI = "Bernoulli"
    BAYESIAN = "Bayesian"


class Bootstrap:
    """Sample weights for one boosting iteration.

    - ``No``: every weight is 1
    - ``Bernoulli``: weight 1 with probability ``sample_rate``, else 0
    - ``Bayesian``: ``(-log u) ** bagging_temperature`` with ``u ~ U(0, 1)``

    Args:
        bootstrap_type: One of "No", "Bernoulli", "Bayesian".
        sample_rate: Keep probability for Bernoulli sampling.
        bagging_temperature: Exponent for Bayesian weights; 0 gives all ones.
        random_state: Seed. Two samplers with the same seed produce the same
            sequence of weight vectors.

    Example:
        >>> bootstrap = Bootstrap("Bernoulli", sample_rate=0.5, random_state=0)
        >>> weights = bootstrap.bootstrapped_weights(1000)
    """

    def __init__(
        self,
        bootstrap_type: str | BootstrapType = "No",
        sample_rate: float = 0.66,
        bagging_temperature: float = 1.0,
        random_state: int | None = None,
    ):
        self.bootstrap_type = BootstrapType(bootstrap_type)
        if not 0.0 < sample_rate <= 1.0:
            raise ValueError(f"sample_rate must be in (0, 1], got {sample_rate}")
        if bagging_temperature < 0.0:
            raise ValueError(f"bagging_temperature must be >= 0, got {bagging_temperature}")
        self.sample_rate = sample_rate
        self.bagging_temperature = bagging_temperature
        self._rng = np.random.default_rng(random_state)

    def bootstrapped_weights(self, n: int) -> NDArray[np.float64]:
        if self.bootstrap_type is BootstrapType.BERNOULLI:
            return (self._rng.random(n) < self.sample_rate).astype(np.float64)
        if self.bootstrap_type is BootstrapType.BAYESIAN:
            # 1 - u keeps the log argument in (0, 1]
            u = 1.0 - self._rng.random(n)
            return np.power(-np.log(u), self.bagging_temperature)
        return np.ones(n, dtype=np.float64)

    def __repr__(self) -> str:
        return (
            f"Bootstrap({self.bootstrap_type.value!r}, sample_rate={self.sample_rate}, "
            f"bagging_temperature={self.bagging_temperature})"
        )
