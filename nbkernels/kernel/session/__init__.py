"""Sessions which start, restart and interrupt kernels."""
