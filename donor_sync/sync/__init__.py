"""Donor/contact synchronization: models, mapping, hashing, conflicts and the engine."""
