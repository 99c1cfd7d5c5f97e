"""Engine services.

This package contains the dataflow engine and its collaborators.
"""

from canvasflow.services.dataflow import DataflowEngine

__all__ = [
    "DataflowEngine",
]
