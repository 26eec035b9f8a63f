"""
Parameter group definitions for sampler configuration using Pydantic for type
safety and validation.

Two groups are defined here:

    - ``PriorConfig`` collects the hyper-parameters of the hierarchical
      Poisson-Gamma model (priors on ``mu``, ``delta``, ``phi``, ``s`` and
      ``theta``).
    - ``MCMCConfig`` collects the run settings of the adaptive
      Metropolis-within-Gibbs sampler (iterations, thinning, burn-in,
      adaptation and persistence).

Both groups inherit from Pydantic's BaseModel and are immutable, so a
configuration that was validated once cannot drift while a chain runs.
"""

from pathlib import Path
from typing import Optional, Tuple

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

# ==============================================================================
# Prior Configuration Group
# ==============================================================================


class PriorConfig(BaseModel):
    """Hyper-parameters of the hierarchical model with automatic validation.

    Attributes
    ----------
    mu : Tuple[float, float]
        ``(loc, scale)`` of the LogNormal prior on gene expression rates.
    delta : Tuple[float, float]
        ``(loc, scale)`` of the LogNormal prior on biological
        over-dispersion.
    phi : float
        Shape and rate ``a_phi`` of the i.i.d. ``Gamma(a_phi, a_phi)`` prior
        on cell normalizing constants (renormalized to mean one, which
        corresponds to a scaled symmetric Dirichlet prior).
    s : Tuple[float, float]
        ``(a_s, b_s)`` of the InverseGamma prior on cell size factors.
    theta : Tuple[float, float]
        ``(a_theta, b_theta)`` of the Gamma (shape, rate) prior on technical
        over-dispersion, shared by every batch.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    mu: Tuple[float, float] = Field(
        (0.0, 3.0), description="Expression rate prior (LogNormal)"
    )
    delta: Tuple[float, float] = Field(
        (0.0, 1.5), description="Biological over-dispersion prior (LogNormal)"
    )
    phi: float = Field(
        1.0, gt=0, description="Normalizing constant prior (Gamma(a, a))"
    )
    s: Tuple[float, float] = Field(
        (2.0, 1.0), description="Size factor prior (InverseGamma)"
    )
    theta: Tuple[float, float] = Field(
        (1.0, 1.0), description="Technical over-dispersion prior (Gamma)"
    )

    # --------------------------------------------------------------------------
    # Validation Methods
    # --------------------------------------------------------------------------

    @field_validator("mu", "delta")
    @classmethod
    def validate_lognormal_params(
        cls, v: Tuple[float, float]
    ) -> Tuple[float, float]:
        """
        Validate LogNormal parameters (location can be zero/negative, scale must
        be positive).
        """
        if v[1] <= 0:
            raise ValueError(
                f"LogNormal scale parameter must be positive, got {v}"
            )
        return v

    @field_validator("s", "theta")
    @classmethod
    def validate_positive_params(
        cls, v: Tuple[float, float]
    ) -> Tuple[float, float]:
        """Validate that shape and rate parameters are positive."""
        if any(x <= 0 for x in v):
            raise ValueError(f"Prior parameters must be positive, got {v}")
        return v


# ==============================================================================
# MCMC Configuration Group
# ==============================================================================


class MCMCConfig(BaseModel):
    """Configuration for adaptive Metropolis-within-Gibbs sampling.

    Iterations are counted from 1. Iteration ``i`` is retained when
    ``i > burn_in`` and ``(i - burn_in)`` is a multiple of ``thin``, so a
    run keeps exactly ``(n_iterations - burn_in) // thin`` draws.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    n_iterations: int = Field(
        ..., ge=1, description="Total number of MCMC iterations"
    )
    thin: int = Field(1, ge=1, description="Thinning period")
    burn_in: int = Field(0, ge=0, description="Number of burn-in iterations")
    adaptation_window: Optional[int] = Field(
        None,
        ge=0,
        description=(
            "Iterations over which proposal scales adapt. Defaults to the "
            "burn-in period"
        ),
    )
    adaptation_batch_size: int = Field(
        50, ge=1, description="Iterations between proposal scale updates"
    )
    target_acceptance: float = Field(
        0.44, gt=0, lt=1, description="Target acceptance rate per entity"
    )
    max_adaptation_step: float = Field(
        0.1, gt=0, description="Largest change of a log proposal scale"
    )
    initial_proposal_scale: float = Field(
        0.1, gt=0, description="Initial log-scale random walk std. deviation"
    )
    seed: int = Field(42, description="Random seed of the chain")
    persist_draws: Optional[Path] = Field(
        None, description="Directory receiving streamed draws (CSV per block)"
    )
    run_name: str = Field(
        "run", min_length=1, description="Name keying persisted draws"
    )

    # --------------------------------------------------------------------------
    # Validation Methods
    # --------------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_schedule(self) -> "MCMCConfig":
        """Validate burn-in and adaptation against the number of iterations."""
        if self.burn_in >= self.n_iterations:
            raise ValueError(
                f"burn_in ({self.burn_in}) must be smaller than n_iterations "
                f"({self.n_iterations})"
            )
        if (
            self.adaptation_window is not None
            and self.adaptation_window > self.n_iterations
        ):
            raise ValueError(
                f"adaptation_window ({self.adaptation_window}) cannot exceed "
                f"n_iterations ({self.n_iterations})"
            )
        return self

    # --------------------------------------------------------------------------
    # Derived quantities
    # --------------------------------------------------------------------------

    @property
    def n_adaptation(self) -> int:
        """Number of iterations during which proposal scales adapt."""
        if self.adaptation_window is None:
            return self.burn_in
        return self.adaptation_window

    @property
    def n_retained(self) -> int:
        """Number of draws kept after burn-in and thinning."""
        return (self.n_iterations - self.burn_in) // self.thin

    def is_retained(self, iteration: int) -> bool:
        """Whether the (1-based) ``iteration`` is kept in the chain."""
        return (
            iteration > self.burn_in
            and (iteration - self.burn_in) % self.thin == 0
        )
