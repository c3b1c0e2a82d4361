"""Shared engine foundations: models, errors, settings, clocks and the store."""
