"""Top‑level package for microbiome‑based condition detection.

This package exposes modules for preparing abundance tables, building
classification tasks, tuning and comparing classifiers, estimating
feature importance and plotting the results.  Notebooks and scripts
can import project components directly, for example::

    from microbiome_detection import prepare_data, train, importance

The command line entry points are ``prepare_data``, ``train``,
``evaluate``, ``optuna_search``, ``interpret_shap`` and ``runner``,
each runnable with ``python -m microbiome_detection.<module>``.
"""

__version__ = "0.1.0"

from . import datasets  # noqa: F401
from . import prepare_data  # noqa: F401
from . import task  # noqa: F401
from . import models  # noqa: F401
from . import tuning  # noqa: F401
from . import evaluate  # noqa: F401
from . import importance  # noqa: F401
from . import plots  # noqa: F401
from . import train  # noqa: F401

__all__ = [
    "datasets",
    "prepare_data",
    "task",
    "models",
    "tuning",
    "evaluate",
    "importance",
    "plots",
    "train",
]
