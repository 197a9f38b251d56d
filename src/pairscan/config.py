"""
Run configuration for the research pipeline.

One flat dataclass holds the parameters of every stage; defaults follow the
research command-line defaults.
"""

from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional, Tuple

from .backtest import DEFAULT_PERIODS_PER_YEAR, SizingMode
from .errors import InvalidParameterError
from .validation import MODES, ValidationGrid, parse_grid_values


@dataclass
class ResearchConfig:
    """Stage parameters for run_research."""
    # Clustering
    cluster_series: bool = True
    cluster_mode:   str = "auto"                 # auto | manual
    tau:            float = 0.85
    pcs_cap:        int = 8
    target_per_cluster: int = 10
    pcs:            int = 6
    k:              Optional[int] = None         # fixed K in manual mode
    k_min:          int = 3
    k_max:          int = 10
    min_size:       int = 5
    max_size:       int = 20
    kmeans_runs:    int = 3
    kmeans_max_iter: int = 100

    # Cointegration
    max_lag:        int = 4
    alpha_level:    int = 5                      # 5 | 10
    hl_min:         Optional[float] = None
    hl_max:         Optional[float] = None

    # Validation grid
    z_entry:        Tuple[float, ...] = (1.0, 1.5, 2.0)
    z_exit:         Tuple[float, ...] = (0.5, 1.0)
    z_stop:         Tuple[Optional[float], ...] = (3.0, 4.0)
    sizing:         Tuple[SizingMode, ...] = (SizingMode.FIXED, SizingMode.HALF_LIFE_SCALED)
    q:              Tuple[float, ...] = ()
    r:              Tuple[float, ...] = ()
    modes:          Tuple[str, ...] = field(default_factory=lambda: tuple(MODES))

    # Run
    periods_per_year: float = DEFAULT_PERIODS_PER_YEAR
    train_fraction: float = 0.8
    top_per_pair:   int = 1
    equity_top_n:   int = 10
    n_jobs:         int = 1
    seed:           Optional[int] = 42
    run_oos:        bool = True

    def __post_init__(self):
        if self.cluster_mode not in ("auto", "manual"):
            raise InvalidParameterError(f"cluster_mode must be 'auto' or 'manual', got {self.cluster_mode!r}")
        if int(self.alpha_level) not in (5, 10):
            raise InvalidParameterError(f"alpha_level must be 5 or 10, got {self.alpha_level}")
        if not 0.0 < self.train_fraction < 1.0:
            raise InvalidParameterError(f"train_fraction must be in (0, 1), got {self.train_fraction}")
        if self.periods_per_year <= 0:
            raise InvalidParameterError(f"periods_per_year must be positive, got {self.periods_per_year}")
        if self.equity_top_n < 0:
            raise InvalidParameterError(f"equity_top_n must be >= 0, got {self.equity_top_n}")

    @classmethod
    def from_dict(cls, params: Mapping[str, Any]) -> "ResearchConfig":
        """Build a config from a dict, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(params) - known)
        if unknown:
            raise InvalidParameterError(f"Unknown config keys: {unknown}")

        values: Dict[str, Any] = dict(params)
        for key in ('z_entry', 'z_exit', 'z_stop', 'q', 'r'):
            if isinstance(values.get(key), str):
                values[key] = parse_grid_values(values[key], allow_none=(key == 'z_stop'))
        for key in ('sizing', 'modes'):
            if isinstance(values.get(key), str):
                values[key] = [s.strip() for s in values[key].split(',') if s.strip()]
        for key in ('z_entry', 'z_exit', 'z_stop', 'sizing', 'q', 'r', 'modes'):
            if values.get(key) is not None:
                values[key] = tuple(values[key])
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def grid(self) -> ValidationGrid:
        return ValidationGrid(
            z_entry=self.z_entry,
            z_exit=self.z_exit,
            z_stop=self.z_stop,
            sizing=self.sizing,
            q=self.q,
            r=self.r
        )
