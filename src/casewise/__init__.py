"""
casewise - Resumable LLM classification experiments.

Classify every case once, survive interruptions, reconcile the verdicts.
"""

from casewise.controller import ExperimentController, run_experiment
from casewise.models.config import ExperimentConfig

__version__ = "0.1.0"
__all__ = ["ExperimentConfig", "ExperimentController", "run_experiment", "__version__"]
