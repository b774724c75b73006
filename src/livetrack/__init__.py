"""Live courier location pipeline: smoothing, throttling and route stitching."""

__version__ = "0.1.0"
