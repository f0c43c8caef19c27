"""
Observation data for count models with observation-level random effects.

**Table (table.py):**
- ObservationTable: immutable counts + covariates, row-order preserving
- Loading from pandas DataFrames and CSV files
- Row subsetting and leave-one-out row removal

**Standardization (standardize.py):**
- Standardizer: column mean / sample std, fitted on one matrix and
  applied to another (training-only statistics in cross-validation)
"""

from observations.table import ObservationTable, from_arrays
from observations.standardize import Standardizer

__all__ = [
    "ObservationTable",
    "from_arrays",
    "Standardizer",
]
