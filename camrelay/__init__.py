"""Camera relay: one upstream connection per device, fanned out to many viewers."""

__version__ = "0.1.0"
