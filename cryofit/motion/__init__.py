"""Motion-prior hyperparameter estimation."""
