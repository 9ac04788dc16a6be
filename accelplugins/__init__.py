"""GPU and FPGA device discovery, device trees and GPU node labels."""

__version__ = "0.19.0"