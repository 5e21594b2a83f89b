"""Concerns the discovery of kernels and sessions against them."""
