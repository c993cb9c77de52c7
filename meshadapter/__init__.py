"""Model-mesh runtime adapter for Triton, with configuration for TorchServe."""

__version__ = "0.1.0"

__all__ = [
    "common",
    "modelconfig",
    "triton_schema",
    "triton_config",
    "triton_layout",
    "triton_server",
    "torchserve_config",
]