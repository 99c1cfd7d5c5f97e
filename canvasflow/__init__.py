"""Canvasflow.

Dataflow propagation engine for node-based canvases.
"""

from canvasflow.services.dataflow import DataflowEngine

__version__ = "0.1.0"

__all__ = [
    "DataflowEngine",
    "__version__",
]
