"""
PBMC Time-Score Pipeline
========================

Discovery and validation of a time-until-cryopreservation gene-expression
signature in PBMC single-cell RNA sequencing data.

Modules:
--------
- qc: Quality control and filtering
- preprocessing: Normalization, time labels, embedding and clustering
- splitting: Label-balanced cross-validation folds
- signature: Differential expression and signature discovery
- metasignature: Intersection of fold signatures
- scoring: Per-cell time-score
- validation: ROC, classification metrics, time dependency
- enrichment: Gene-set enrichment of metasignatures
- pipeline: Per-cell-type orchestration and export
- visualization: Plotting
- utils: Logging, configuration and checkpoints
"""

__version__ = "1.0.0"

from . import utils
from . import exceptions
from . import qc
from . import preprocessing
from . import splitting
from . import signature
from . import metasignature
from . import scoring
from . import validation
from . import enrichment
from . import pipeline
from . import visualization

from .exceptions import TimescoreError, InvalidInputError, InsufficientDataError, MissingGeneWarning

__all__ = [
    "utils",
    "exceptions",
    "qc",
    "preprocessing",
    "splitting",
    "signature",
    "metasignature",
    "scoring",
    "validation",
    "enrichment",
    "pipeline",
    "visualization",
    "TimescoreError",
    "InvalidInputError",
    "InsufficientDataError",
    "MissingGeneWarning",
]

__description__ = "PBMC time-until-cryopreservation signature pipeline"
