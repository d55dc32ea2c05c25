"""B-factor search, radial accumulation and simplex minimisation."""
