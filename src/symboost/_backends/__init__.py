"""Compute backends for SymBoost (Numba CPU kernels)."""
