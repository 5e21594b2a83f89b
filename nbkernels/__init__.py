"""This package discovers notebook kernels and manages sessions against them."""

__app_name__ = "nbkernels"
__version__ = "1.0.0"
__strapline__ = "Kernel discovery and sessions for notebook front-ends"
__author__ = "Josiah Outram Halstead"
__email__ = "josiah@halstead.email"
__copyright__ = f"© 2022, {__author__}"
__license__ = "MIT"
