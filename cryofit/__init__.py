"""B-factor/scale fitting and motion-prior hyperparameter estimation."""

__version__ = "0.1.0"
