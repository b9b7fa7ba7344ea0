"""Live cueing layer: marker scheduling and show-control dispatch."""

__version__ = "0.1.0"
