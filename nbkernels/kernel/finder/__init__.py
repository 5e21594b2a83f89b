"""Finders which discover the kernels available to a notebook."""
