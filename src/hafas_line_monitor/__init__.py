"""HAFAS Line Monitor: adaptive departure and delay collection for one bus line."""

__version__ = "0.1.0"

from hafas_line_monitor.__main__ import main

__all__ = ["main", "__version__"]
