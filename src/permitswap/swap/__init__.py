"""Swap pipeline: allowance gating, permits, encoding, fees, submission and polling."""
